"""Core data models shared by the graph builder, the executors and the API.

Defines the outcome lattice used to aggregate stage results, the command
description handed to the runner, the immutable command result it
returns, and the result tree reported at the end of a run.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stageflow.utils.exceptions import CommandFailedError, CommandTimeoutError

# Exit code reported for a command killed after exceeding its timeout
# (same convention as coreutils ``timeout``).
TIMEOUT_EXIT_CODE = 124
# Exit code reported when the process could not be spawned at all.
SPAWN_FAILURE_EXIT_CODE = 127


class Outcome(str, Enum):
    """Terminal status of a stage node or of a whole run."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    UNSTABLE = "unstable"
    FAILURE = "failure"
    ABORTED = "aborted"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @property
    def is_fatal(self) -> bool:
        """``True`` for outcomes that stop the remaining sequential siblings."""
        return self in (Outcome.FAILURE, Outcome.ABORTED)


_SEVERITY: dict[Outcome, int] = {
    Outcome.SUCCESS: 0,
    Outcome.SKIPPED: 0,
    Outcome.UNSTABLE: 1,
    Outcome.FAILURE: 2,
    Outcome.ABORTED: 3,
}


def worst(outcomes: Iterable[Outcome]) -> Outcome:
    """Return the most severe of *outcomes*.

    ``SKIPPED`` ranks like ``SUCCESS``; a collection with nothing worse than
    that (including an empty one) aggregates to ``SUCCESS``.
    """
    result = Outcome.SUCCESS
    for outcome in outcomes:
        if outcome.severity > result.severity:
            result = outcome
    return result


class HookTrigger(str, Enum):
    """Keys under which post-hooks are declared."""

    ALWAYS = "always"
    SUCCESS = "success"
    UNSTABLE = "unstable"
    FAILURE = "failure"
    ABORTED = "aborted"
    SKIPPED = "skipped"
    CLEANUP = "cleanup"

    @classmethod
    def for_outcome(cls, outcome: Outcome) -> "HookTrigger":
        return cls(outcome.value)


class StageKind(str, Enum):
    LEAF = "leaf"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class ResourceKind(str, Enum):
    CONTAINER = "container"
    DIRECTORY = "directory"
    PROCESS = "process"
    OTHER = "other"


class ResourceSpec(BaseModel):
    """Declarative description of a resource a command creates.

    The resource is registered with the guard *before* its command runs so
    that a partially created resource is still torn down.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    kind: ResourceKind = ResourceKind.OTHER
    release: tuple[str, ...]

    @field_validator("release")
    @classmethod
    def _release_not_empty(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            raise ValueError("release command must not be empty")
        return value


class CommandSpec(BaseModel):
    """One external command invocation.

    Attributes:
        argv: Program and arguments; ``${NAME}`` placeholders are expanded
            from the run environment at execution time.
        working_dir: Directory to run in; defaults to the stage workspace or
            the current directory.
        env: Overlay merged on top of the run environment (overlay wins).
        allow_failure: A non-zero exit is recorded but does not fail the stage.
        timeout: Seconds before the process is killed; ``None`` for no limit.
        resources: Resources this command creates.
        name: Optional display label used in logs and artifact names.
    """

    model_config = ConfigDict(frozen=True)

    argv: tuple[str, ...]
    working_dir: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    allow_failure: bool = False
    timeout: float | None = None
    resources: tuple[ResourceSpec, ...] = ()
    name: str | None = None

    @field_validator("argv")
    @classmethod
    def _argv_not_empty(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value or not value[0]:
            raise ValueError("argv must contain at least the program name")
        return value

    @field_validator("timeout")
    @classmethod
    def _timeout_positive(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @property
    def label(self) -> str:
        return self.name or " ".join(self.argv)


class CommandResult(BaseModel):
    """Immutable outcome of a single command execution."""

    model_config = ConfigDict(frozen=True)

    argv: tuple[str, ...]
    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""
    duration: float = 0.0
    timed_out: bool = False
    spawn_error: str | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def failure_kind(self) -> str | None:
        """Classify a failed result: ``timeout``, ``spawn`` or ``exit_code``."""
        if self.timed_out:
            return "timeout"
        if self.spawn_error is not None:
            return "spawn"
        if self.exit_code != 0:
            return "exit_code"
        return None

    def check(self) -> None:
        """Raise :class:`CommandTimeoutError` or :class:`CommandFailedError`
        unless the command succeeded."""
        if self.timed_out:
            raise CommandTimeoutError(list(self.argv), self.exit_code, self.duration)
        if not self.succeeded:
            raise CommandFailedError(list(self.argv), self.exit_code)


class ArtifactRef(BaseModel):
    """Reference to an artifact deposited in the sink during a run."""

    name: str
    path: str
    size_bytes: int
    sha256: str
    owner: str = ""


class CommandRecord(BaseModel):
    """What the result tree keeps about one command that ran."""

    label: str
    argv: list[str]
    exit_code: int
    allowed_failure: bool = False
    failure_kind: str | None = None
    duration: float = 0.0
    log_artifact: str | None = None

    @classmethod
    def from_result(
        cls,
        spec: CommandSpec,
        result: CommandResult,
        log_artifact: str | None = None,
    ) -> "CommandRecord":
        return cls(
            label=spec.label,
            argv=list(result.argv),
            exit_code=result.exit_code,
            allowed_failure=spec.allow_failure and not result.succeeded,
            failure_kind=result.failure_kind,
            duration=round(result.duration, 4),
            log_artifact=log_artifact,
        )


class HookRecord(BaseModel):
    owner: str
    trigger: HookTrigger
    succeeded: bool = True
    error: str = ""
    commands: list[CommandRecord] = []


class NodeResult(BaseModel):
    """Outcome of one stage node, with its children's results nested."""

    name: str
    path: str
    kind: StageKind
    outcome: Outcome = Outcome.SUCCESS
    skip_reason: str = ""
    commands: list[CommandRecord] = []
    hooks: list[HookRecord] = []
    children: list["NodeResult"] = []
    released_resources: list[str] = []
    duration: float = 0.0

    def find(self, path: str) -> "NodeResult | None":
        """Return the result for *path* in this subtree, if any."""
        if self.path == path:
            return self
        for child in self.children:
            found = child.find(path)
            if found is not None:
                return found
        return None

    def walk(self) -> Iterable["NodeResult"]:
        yield self
        for child in self.children:
            yield from child.walk()


class PipelineResult(BaseModel):
    """Everything an operator gets back after a run reaches a terminal state."""

    run_id: str
    pipeline: str
    outcome: Outcome
    root: NodeResult
    graph_hooks: list[HookRecord] = []
    artifacts: list[ArtifactRef] = []
    annotations: list[str] = []
    released_resources: list[str] = []
    started_at: datetime
    finished_at: datetime
    duration: float = 0.0
