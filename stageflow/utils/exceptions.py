class StageflowError(Exception):
    """Base exception for the pipeline execution engine."""


class PipelineDefinitionError(StageflowError):
    """The pipeline definition cannot be turned into a valid stage graph.

    All problems found while building the graph are collected in
    :attr:`problems` so a definition can be fixed in one pass.
    """

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        detail = "; ".join(self.problems) if self.problems else "unknown problem"
        super().__init__(f"Invalid pipeline definition: {detail}")


class GateEvaluationError(StageflowError):
    def __init__(self, reference: str, detail: str):
        self.reference = reference
        super().__init__(f"Gate could not resolve '{reference}': {detail}")


class CommandFailedError(StageflowError):
    def __init__(self, argv: list[str], exit_code: int):
        self.argv = list(argv)
        self.exit_code = exit_code
        super().__init__(f"Command {' '.join(argv)!r} exited with {exit_code}")


class CommandTimeoutError(CommandFailedError):
    def __init__(self, argv: list[str], exit_code: int, timeout: float):
        self.timeout = timeout
        super().__init__(argv, exit_code)
        self.args = (f"Command {' '.join(argv)!r} timed out after {timeout}s",)


class HookFailureError(StageflowError):
    def __init__(self, owner: str, trigger: str, detail: str):
        self.owner = owner
        self.trigger = trigger
        super().__init__(f"Post-hook '{trigger}' of '{owner}' failed: {detail}")


class ResourceReleaseError(StageflowError):
    def __init__(self, resource_id: str, detail: str):
        self.resource_id = resource_id
        super().__init__(f"Releasing resource '{resource_id}' failed: {detail}")


class RunAbortedError(StageflowError):
    def __init__(self, reason: str = "aborted by operator"):
        self.reason = reason
        super().__init__(f"Run aborted: {reason}")


class OutcomeAlreadyFinalizedError(StageflowError):
    pass


class DefinitionNotFoundError(StageflowError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Pipeline definition not found: {name}")


class RunNotFoundError(StageflowError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class ArtifactStorageError(StageflowError):
    pass
