"""Pipeline executor -- runs a stage graph from trigger to terminal state.

The :class:`PipelineExecutor` owns one run end to end:

1. Builds the :class:`RunContext` from the trigger and the graph's declared
   environment.
2. Walks the graph from its root through a :class:`StageExecutor`.
3. Runs the graph-level hooks: ``always``, the hook for the final outcome,
   then ``cleanup`` unconditionally.
4. Releases every resource still held by the :class:`ResourceGuard`.
5. Finalizes the run outcome and flushes the run manifest to the artifact
   sink.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from stageflow.core.context import RunContext, TriggerEvent
from stageflow.core.graph import StageGraph
from stageflow.core.models import HookTrigger, NodeResult, Outcome, PipelineResult, worst
from stageflow.engine.executor import StageExecutor
from stageflow.engine.guard import ResourceGuard
from stageflow.engine.hooks import graph_hook_order
from stageflow.engine.runner import CommandRunner
from stageflow.output.artifacts import ArtifactSink
from stageflow.utils.exceptions import ArtifactStorageError
from stageflow.utils.logging import bind_run, get_logger, unbind_run

MANIFEST_NAME = "manifest.json"


class PipelineExecutor:
    """Top-level orchestrator for pipeline runs.

    Parameters
    ----------
    runner:
        Command runner shared by every run; one is created when omitted.
    sink:
        Artifact sink receiving command logs, collected files and the run
        manifest.  Without one nothing is persisted.
    capture_logs:
        Store each command's output as a run artifact.
    allowed_failure_outcome:
        Default outcome for leaves whose ``allow_failure`` commands exit
        non-zero; a pipeline's own ``options.allowed_failure_outcome`` wins.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        sink: ArtifactSink | None = None,
        capture_logs: bool = True,
        allowed_failure_outcome: Outcome = Outcome.UNSTABLE,
    ) -> None:
        self.runner = runner or CommandRunner()
        self.sink = sink
        self.capture_logs = capture_logs
        self.allowed_failure_outcome = allowed_failure_outcome
        self._active: dict[str, RunContext] = {}
        self.logger = get_logger("engine.pipeline")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_context(
        self,
        graph: StageGraph,
        trigger: TriggerEvent,
        run_id: str | None = None,
    ) -> RunContext:
        """Build the run context for *trigger*, resolving the environment once."""
        return RunContext.create(trigger, graph.environment, run_id=run_id)

    def abort(self, run_id: str, reason: str = "aborted by operator") -> bool:
        """Ask the in-flight run *run_id* to stop.

        Returns ``False`` when no such run is executing.
        """
        ctx = self._active.get(run_id)
        if ctx is None:
            return False
        ctx.request_abort(reason)
        return True

    @property
    def active_runs(self) -> list[str]:
        return list(self._active)

    async def run(
        self,
        graph: StageGraph,
        trigger: TriggerEvent | None = None,
        ctx: RunContext | None = None,
    ) -> PipelineResult:
        """Execute *graph* and return the complete result.

        Pass a pre-built *ctx* (see :meth:`create_context`) to keep a handle
        for :meth:`RunContext.request_abort` while the run is in flight.
        """
        if ctx is None:
            if trigger is None:
                raise ValueError("either trigger or ctx is required")
            ctx = self.create_context(graph, trigger)

        self._active[ctx.run_id] = ctx
        bind_run(run_id=ctx.run_id, pipeline=graph.name)
        started_at = datetime.now(timezone.utc)
        self.logger.info(
            "pipeline_start",
            branch=ctx.branch,
            build_number=ctx.trigger.build_number,
            nodes=len(graph),
        )

        guard = ResourceGuard(self.runner, dict(ctx.environment))
        stage_executor = StageExecutor(
            ctx,
            self.runner,
            guard,
            sink=self.sink,
            capture_logs=self.capture_logs,
            allowed_failure_outcome=self._allowed_failure_outcome(graph),
        )
        watchdog = self._start_watchdog(ctx, graph.options.timeout)

        root: NodeResult | None = None
        graph_hooks = []
        released: list[str] = []
        try:
            root = await stage_executor.execute(graph.root)
            outcome = self._run_outcome(root.outcome, ctx)

            graph_hooks = await stage_executor.hooks.run_all(
                graph.name, graph.hooks, graph_hook_order(outcome)
            )
        except asyncio.CancelledError:
            self.logger.warning("pipeline_cancelled", run_id=ctx.run_id)
            if not ctx.finalized:
                ctx.finalize(Outcome.ABORTED)
            raise
        finally:
            if watchdog is not None:
                watchdog.cancel()
            graph_hooks += await stage_executor.hooks.run_all(
                graph.name, graph.hooks, [HookTrigger.CLEANUP]
            )
            released = await guard.release_all()
            self._active.pop(ctx.run_id, None)
            unbind_run("run_id", "pipeline")

        final = self._run_outcome(outcome, ctx)
        ctx.finalize(final)

        finished_at = datetime.now(timezone.utc)
        result = PipelineResult(
            run_id=ctx.run_id,
            pipeline=graph.name,
            outcome=final,
            root=root,
            graph_hooks=graph_hooks,
            artifacts=ctx.artifacts,
            annotations=list(ctx.annotations),
            released_resources=released,
            started_at=started_at,
            finished_at=finished_at,
            duration=round((finished_at - started_at).total_seconds(), 4),
        )
        await self._flush_manifest(result)

        self.logger.info(
            "pipeline_complete",
            run_id=ctx.run_id,
            pipeline=graph.name,
            outcome=final.value,
            artifacts=len(result.artifacts),
            annotations=len(result.annotations),
            duration=result.duration,
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _allowed_failure_outcome(self, graph: StageGraph) -> Outcome:
        declared = graph.options.allowed_failure_outcome
        return Outcome(declared) if declared else self.allowed_failure_outcome

    @staticmethod
    def _run_outcome(outcome: Outcome, ctx: RunContext) -> Outcome:
        """The root's outcome, degraded to ``UNSTABLE`` by run annotations."""
        if outcome == Outcome.SKIPPED:
            outcome = Outcome.SUCCESS
        if ctx.annotations:
            outcome = worst([outcome, Outcome.UNSTABLE])
        return outcome

    def _start_watchdog(self, ctx: RunContext, timeout: float | None) -> asyncio.Task | None:
        if timeout is None:
            return None

        async def _watch() -> None:
            await asyncio.sleep(timeout)
            self.logger.warning("pipeline_timeout", timeout=timeout)
            ctx.request_abort(f"pipeline timeout of {timeout}s exceeded")

        return asyncio.create_task(_watch())

    async def _flush_manifest(self, result: PipelineResult) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.store_json(result.run_id, MANIFEST_NAME, result.model_dump(mode="json"))
        except ArtifactStorageError as exc:
            self.logger.error("manifest_flush_failed", run_id=result.run_id, error=str(exc))
