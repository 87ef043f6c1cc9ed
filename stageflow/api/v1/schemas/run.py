"""Request/response schemas for triggering and inspecting pipeline runs."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from stageflow.core.context import TriggerEvent
from stageflow.core.models import Outcome, PipelineResult


class TriggerRequest(BaseModel):
    """Webhook / poll payload starting a run.

    Either ``pipeline`` names a registered definition, or ``definition``
    carries one inline (its ``name`` is then used).
    """

    pipeline: str | None = None
    definition: dict[str, Any] | None = None
    branch: str
    build_number: int = 0
    revision: str = ""
    metadata: dict[str, str] = {}
    parameters: dict[str, str] = {}

    def to_trigger(self) -> TriggerEvent:
        return TriggerEvent(
            branch=self.branch,
            build_number=self.build_number,
            revision=self.revision,
            metadata=self.metadata,
            parameters=self.parameters,
        )


class AbortRequest(BaseModel):
    reason: str = Field(default="aborted by operator", max_length=500)


class RunInfo(BaseModel):
    """Summary of a run; ``outcome`` is ``None`` while it is still running."""

    run_id: str
    pipeline: str
    branch: str
    status: str  # "running" or "finished"
    outcome: Outcome | None = None
    abort_requested: bool = False


class RunDetail(RunInfo):
    result: PipelineResult | None = None
    error: str = ""


class RunListResponse(BaseModel):
    runs: list[RunInfo]
    total: int
