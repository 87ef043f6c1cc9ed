"""Run context -- the state shared by every stage of one pipeline run.

The :class:`RunContext` carries what gates and commands read (the resolved
environment, the branch and the trigger metadata) and what stages produce
(the artifact list and run-level annotations).  The environment is frozen
when the context is built; the artifact list only grows, and appends from
concurrently running stages are serialised through a lock.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Mapping
from types import MappingProxyType

from pydantic import BaseModel, Field

from stageflow.core.models import ArtifactRef, Outcome
from stageflow.utils.exceptions import OutcomeAlreadyFinalizedError
from stageflow.utils.logging import get_logger

logger = get_logger("core.context")

# Environment keys every run defines, whatever the pipeline declares.
BUILTIN_ENV_KEYS = frozenset({"BRANCH_NAME", "BUILD_NUMBER", "GIT_COMMIT", "RUN_ID"})
# Trigger fields gates may always reference.
BUILTIN_TRIGGER_FIELDS = frozenset({"branch", "build_number", "revision"})


class TriggerEvent(BaseModel):
    """The webhook / poll event that started a run.

    Attributes:
        branch: Branch the run builds.
        build_number: Monotonic build counter supplied by the trigger source.
        revision: Source revision (commit id).
        metadata: Extra trigger fields (event type, author, ...).
        parameters: Build parameters overriding declared environment defaults.
    """

    branch: str
    build_number: int = 0
    revision: str = ""
    metadata: dict[str, str] = {}
    parameters: dict[str, str] = {}

    def lookup(self, field: str) -> str | None:
        """Return a trigger field as a string, or ``None`` when absent."""
        if field == "branch":
            return self.branch
        if field == "build_number":
            return str(self.build_number)
        if field == "revision":
            return self.revision or None
        return self.metadata.get(field)


def resolve_environment(
    declared: Mapping[str, str],
    trigger: TriggerEvent,
    run_id: str,
    process_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Resolve the run environment once, at run start.

    For every declared key the value comes from, in priority order: the
    trigger's ``parameters``, the process environment, the declared default.
    Built-in keys describing the trigger are added last and cannot be
    overridden.
    """
    process_env = os.environ if process_env is None else process_env
    resolved: dict[str, str] = {}
    for key, default in declared.items():
        if key in trigger.parameters:
            resolved[key] = trigger.parameters[key]
        elif key in process_env:
            resolved[key] = process_env[key]
        else:
            resolved[key] = default

    resolved.update(
        BRANCH_NAME=trigger.branch,
        BUILD_NUMBER=str(trigger.build_number),
        GIT_COMMIT=trigger.revision,
        RUN_ID=run_id,
    )
    return resolved


class RunContext:
    """Process-wide state for one pipeline execution."""

    def __init__(
        self,
        trigger: TriggerEvent,
        environment: Mapping[str, str] | None = None,
        run_id: str | None = None,
    ) -> None:
        self.run_id: str = run_id or uuid.uuid4().hex[:12]
        self.trigger = trigger
        self.environment: Mapping[str, str] = MappingProxyType(dict(environment or {}))
        self._artifacts: list[ArtifactRef] = []
        self._artifacts_lock = asyncio.Lock()
        self.annotations: list[str] = []
        self._outcome: Outcome | None = None
        self._abort = asyncio.Event()
        self.abort_reason: str = ""

    @classmethod
    def create(
        cls,
        trigger: TriggerEvent,
        declared_env: Mapping[str, str] | None = None,
        run_id: str | None = None,
        process_env: Mapping[str, str] | None = None,
    ) -> "RunContext":
        """Build a context with its environment resolved from *declared_env*."""
        run_id = run_id or uuid.uuid4().hex[:12]
        env = resolve_environment(declared_env or {}, trigger, run_id, process_env)
        return cls(trigger, env, run_id=run_id)

    @property
    def branch(self) -> str:
        return self.trigger.branch

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    @property
    def artifacts(self) -> list[ArtifactRef]:
        """Snapshot of the artifacts recorded so far, in append order."""
        return list(self._artifacts)

    async def add_artifact(self, ref: ArtifactRef) -> None:
        async with self._artifacts_lock:
            self._artifacts.append(ref)

    # ------------------------------------------------------------------
    # Annotations
    # ------------------------------------------------------------------

    def annotate(self, message: str) -> None:
        """Attach a run-level note (e.g. a failed post-hook)."""
        self.annotations.append(message)
        logger.warning("run_annotated", run_id=self.run_id, message=message)

    # ------------------------------------------------------------------
    # Abort signal
    # ------------------------------------------------------------------

    def request_abort(self, reason: str = "aborted by operator") -> None:
        if self._abort.is_set():
            return
        self.abort_reason = reason
        self._abort.set()
        logger.warning("abort_requested", run_id=self.run_id, reason=reason)

    @property
    def abort_requested(self) -> bool:
        return self._abort.is_set()

    async def wait_for_abort(self) -> None:
        await self._abort.wait()

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------

    @property
    def outcome(self) -> Outcome | None:
        return self._outcome

    @property
    def finalized(self) -> bool:
        return self._outcome is not None

    def finalize(self, outcome: Outcome) -> None:
        """Record the run's terminal outcome.  May be called only once."""
        if self._outcome is not None:
            raise OutcomeAlreadyFinalizedError(
                f"Run {self.run_id} already finalized as {self._outcome.value}"
            )
        self._outcome = outcome
        logger.info("run_finalized", run_id=self.run_id, outcome=outcome.value)
