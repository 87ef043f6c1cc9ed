"""FastAPI dependency functions for injection into endpoint handlers.

The definition registry is expensive to build (it reads and validates every
definition file), so it is created during the app lifespan and stored on
``app.state``.  The executor and artifact sink are thin wrappers and are
created per call from the current settings.
"""

from __future__ import annotations

from fastapi import Request

from stageflow.config import settings
from stageflow.core.models import Outcome
from stageflow.core.registry import DefinitionRegistry
from stageflow.engine.pipeline import PipelineExecutor
from stageflow.engine.runner import CommandRunner
from stageflow.output.artifacts import ArtifactSink
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Definition registry (initialised during app lifespan)
# ---------------------------------------------------------------------------

def get_definition_registry(request: Request) -> DefinitionRegistry:
    """Return the global definition registry stored on ``app.state``."""
    return request.app.state.definition_registry


# ---------------------------------------------------------------------------
# Artifact sink
# ---------------------------------------------------------------------------

def get_artifact_sink() -> ArtifactSink:
    """Return an :class:`ArtifactSink` rooted at the configured artifacts dir."""
    return ArtifactSink(settings.artifacts_dir)


# ---------------------------------------------------------------------------
# Pipeline executor
# ---------------------------------------------------------------------------

def _allowed_failure_outcome() -> Outcome:
    try:
        outcome = Outcome(settings.allowed_failure_outcome)
    except ValueError:
        outcome = None
    if outcome not in (Outcome.UNSTABLE, Outcome.SUCCESS):
        logger.warning(
            "invalid_allowed_failure_outcome",
            value=settings.allowed_failure_outcome,
            using=Outcome.UNSTABLE.value,
        )
        return Outcome.UNSTABLE
    return outcome


def get_executor() -> PipelineExecutor:
    """Build a :class:`PipelineExecutor` wired to the configured sink."""
    return PipelineExecutor(
        runner=CommandRunner(max_output_bytes=settings.max_output_bytes),
        sink=get_artifact_sink(),
        capture_logs=settings.capture_logs,
        allowed_failure_outcome=_allowed_failure_outcome(),
    )
