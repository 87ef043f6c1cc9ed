"""Stage executor -- walks the stage graph and computes node outcomes.

For every :class:`StageNode` the :class:`StageExecutor`:

1. Evaluates the node's gate; a closed gate marks it ``SKIPPED``.
2. Runs the body (leaf), the children in order (sequential) or all children
   at once (parallel), rolling child outcomes up with
   :func:`~stageflow.core.models.worst`.
3. Fires the node's post-hooks for its outcome, then ``always``, then
   ``cleanup``.
4. Releases the resources the node registered with the guard.
"""

from __future__ import annotations

import asyncio
import time
import traceback
from pathlib import Path

from stageflow.core.context import RunContext
from stageflow.core.graph import StageNode
from stageflow.core.models import (
    CommandRecord,
    CommandResult,
    CommandSpec,
    NodeResult,
    Outcome,
    StageKind,
    worst,
)
from stageflow.engine.guard import ManagedResource, ResourceGuard
from stageflow.engine.hooks import HookRunner, node_hook_order
from stageflow.engine.runner import CommandRunner, expand
from stageflow.output.artifacts import ArtifactSink
from stageflow.utils.exceptions import ArtifactStorageError, GateEvaluationError
from stageflow.utils.logging import get_logger


class StageExecutor:
    """Execute stage nodes for one run.

    Parameters
    ----------
    ctx:
        The run context shared by every node.
    runner:
        Executes commands.
    guard:
        Receives the resources created while nodes run.
    sink:
        Optional artifact sink for command logs and collected files.
    capture_logs:
        Store each command's output as a ``.log`` artifact.
    allowed_failure_outcome:
        Outcome a leaf gets when an ``allow_failure`` command exits non-zero
        (``UNSTABLE`` or ``SUCCESS``).
    """

    def __init__(
        self,
        ctx: RunContext,
        runner: CommandRunner,
        guard: ResourceGuard,
        sink: ArtifactSink | None = None,
        capture_logs: bool = True,
        allowed_failure_outcome: Outcome = Outcome.UNSTABLE,
    ) -> None:
        if allowed_failure_outcome not in (Outcome.UNSTABLE, Outcome.SUCCESS):
            raise ValueError("allowed_failure_outcome must be UNSTABLE or SUCCESS")
        self.ctx = ctx
        self.runner = runner
        self.guard = guard
        self.sink = sink
        self.capture_logs = capture_logs
        self.allowed_failure_outcome = allowed_failure_outcome
        self.hooks = HookRunner(self, ctx)
        self.logger = get_logger("engine.executor")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(self, node: StageNode) -> NodeResult:
        """Run *node* (and its subtree) and return its result.

        Never raises for stage failures; unexpected engine errors are logged
        and turn the node into ``FAILURE``.
        """
        start = time.monotonic()
        result = NodeResult(name=node.name, path=node.path, kind=node.kind)

        if self.ctx.abort_requested:
            result.outcome = Outcome.ABORTED
            result.skip_reason = f"run aborted: {self.ctx.abort_reason}"
        else:
            should_run, reason = self._evaluate_gate(node)
            if not should_run:
                result.outcome = Outcome.SKIPPED
                result.skip_reason = reason
                self.logger.info("stage_skipped", path=node.path, reason=reason)
            else:
                self.logger.info("stage_start", path=node.path, kind=node.kind.value)
                result.outcome = await self._dispatch(node, result)

        result.hooks = await self.hooks.run_all(node.path, node.hooks, node_hook_order(result.outcome))
        result.released_resources = await self.guard.release_owned_by(node.path)
        result.duration = round(time.monotonic() - start, 4)

        log = self.logger.info if result.outcome.severity == 0 else self.logger.warning
        log(
            "stage_complete",
            path=node.path,
            outcome=result.outcome.value,
            duration=result.duration,
        )
        return result

    async def run_command(
        self,
        spec: CommandSpec,
        owner: str,
        log_name: str,
    ) -> tuple[CommandResult, CommandRecord]:
        """Run one command for *owner* and archive its output as *log_name*."""
        result = await self.runner.run(spec, self.ctx.environment)
        log_artifact = None
        if self.capture_logs and self.sink is not None:
            log_artifact = await self._store(log_name, self._format_log(spec, result), owner)
        return result, CommandRecord.from_result(spec, result, log_artifact)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, node: StageNode, result: NodeResult) -> Outcome:
        try:
            if node.kind == StageKind.LEAF:
                return await self._run_leaf(node, result)
            if node.kind == StageKind.PARALLEL:
                return await self._run_parallel(node, result)
            return await self._run_sequential(node, result)
        except Exception as exc:
            # Stage failures are outcomes; anything raised here is an engine bug
            # or an environment problem and must not take the run down.
            self.logger.error(
                "stage_unexpected_error",
                path=node.path,
                error=str(exc),
                traceback=traceback.format_exc(),
            )
            self.ctx.annotate(f"{node.path}: unexpected error: {exc}")
            return Outcome.FAILURE

    def _evaluate_gate(self, node: StageNode) -> tuple[bool, str]:
        try:
            passed = node.gate.evaluate(self.ctx)
        except GateEvaluationError as exc:
            self.logger.warning("gate_evaluation_error", path=node.path, error=str(exc))
            return False, f"gate error: {exc}"
        if not passed:
            return False, f"gate not satisfied: {node.gate.describe()}"
        return True, ""

    async def _run_sequential(self, node: StageNode, result: NodeResult) -> Outcome:
        outcomes: list[Outcome] = []
        for child in node.children:
            if self.ctx.abort_requested:
                outcomes.append(Outcome.ABORTED)
                break
            child_result = await self.execute(child)
            result.children.append(child_result)
            outcomes.append(child_result.outcome)
            if child_result.outcome.is_fatal:
                self.logger.info(
                    "sequence_stopped",
                    path=node.path,
                    at=child.path,
                    outcome=child_result.outcome.value,
                )
                return child_result.outcome
        if self.ctx.abort_requested:
            outcomes.append(Outcome.ABORTED)
        return worst(outcomes)

    async def _run_parallel(self, node: StageNode, result: NodeResult) -> Outcome:
        self.logger.info("parallel_start", path=node.path, branches=len(node.children))
        child_results: list[NodeResult] = await asyncio.gather(
            *(self.execute(child) for child in node.children)
        )
        result.children.extend(child_results)
        outcomes = [r.outcome for r in child_results]
        if self.ctx.abort_requested:
            outcomes.append(Outcome.ABORTED)
        return worst(outcomes)

    # ------------------------------------------------------------------
    # Leaves
    # ------------------------------------------------------------------

    async def _run_leaf(self, node: StageNode, result: NodeResult) -> Outcome:
        workspace: Path | None = None
        if node.workspace:
            workspace = self.guard.temp_directory(owner=node.path)

        outcome = Outcome.SUCCESS
        for index, spec in enumerate(node.body):
            if self.ctx.abort_requested:
                self.logger.warning("stage_aborted", path=node.path, remaining=len(node.body) - index)
                outcome = Outcome.ABORTED
                break

            spec = self._bind_workspace(spec, workspace)
            self._register_resources(spec, node.path)
            command_result, record = await self.run_command(
                spec, node.path, f"{node.path}/{index:02d}.log"
            )
            result.commands.append(record)

            if self.ctx.abort_requested:
                self.logger.warning(
                    "stage_aborted", path=node.path, remaining=len(node.body) - index - 1
                )
                outcome = Outcome.ABORTED
                break
            if command_result.succeeded:
                continue
            if spec.allow_failure:
                self.logger.warning(
                    "allowed_failure",
                    path=node.path,
                    command=spec.label,
                    exit_code=command_result.exit_code,
                )
                outcome = worst([outcome, self.allowed_failure_outcome])
                continue

            self.logger.warning(
                "command_failed",
                path=node.path,
                command=spec.label,
                exit_code=command_result.exit_code,
                failure_kind=command_result.failure_kind,
            )
            outcome = Outcome.FAILURE
            break

        if node.collect:
            await self._collect(node, workspace)
        return outcome

    @staticmethod
    def _bind_workspace(spec: CommandSpec, workspace: Path | None) -> CommandSpec:
        if workspace is None:
            return spec
        update: dict = {"env": {"WORKSPACE": str(workspace), **spec.env}}
        if spec.working_dir is None:
            update["working_dir"] = str(workspace)
        return spec.model_copy(update=update)

    def _register_resources(self, spec: CommandSpec, owner: str) -> None:
        for declared in spec.resources:
            resource_id = expand(declared.id, self.ctx.environment)
            self.guard.register(
                ManagedResource(
                    id=resource_id,
                    kind=declared.kind,
                    release_action=CommandSpec(
                        argv=declared.release,
                        name=f"release {resource_id}",
                    ),
                    owner=owner,
                )
            )

    async def _collect(self, node: StageNode, workspace: Path | None) -> None:
        if self.sink is None:
            return
        base = workspace or Path.cwd()
        for pattern in node.collect:
            matches = sorted(p for p in base.glob(expand(pattern, self.ctx.environment)) if p.is_file())
            if not matches:
                self.logger.warning("collect_no_match", path=node.path, pattern=pattern)
                continue
            for match in matches:
                name = f"{node.path}/{match.relative_to(base).as_posix()}"
                try:
                    ref = await self.sink.store_file(self.ctx.run_id, name, match, owner=node.path)
                except ArtifactStorageError as exc:
                    self.logger.error("collect_failed", path=node.path, file=str(match), error=str(exc))
                    continue
                await self.ctx.add_artifact(ref)

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    async def _store(self, name: str, content: bytes, owner: str) -> str | None:
        try:
            ref = await self.sink.store(self.ctx.run_id, name, content, owner=owner)
        except ArtifactStorageError as exc:
            self.logger.error("artifact_store_failed", artifact=name, error=str(exc))
            return None
        await self.ctx.add_artifact(ref)
        return ref.name

    @staticmethod
    def _format_log(spec: CommandSpec, result: CommandResult) -> bytes:
        header = (
            f"$ {' '.join(result.argv)}\n"
            f"# exit_code={result.exit_code} timed_out={result.timed_out}"
            f" allow_failure={spec.allow_failure} duration={result.duration:.3f}s\n"
        )
        parts = [header.encode(), b"--- stdout ---\n", result.stdout]
        if result.stderr:
            parts += [b"\n--- stderr ---\n", result.stderr]
        return b"".join(parts)
