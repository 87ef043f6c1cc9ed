"""Schemas describing registered pipeline definitions."""

from pydantic import BaseModel


class PipelineInfo(BaseModel):
    name: str
    description: str = ""
    stages: list[str]
    environment: dict[str, str] = {}
    trigger_metadata: list[str] = []


class PipelineListResponse(BaseModel):
    pipelines: list[PipelineInfo]
    total: int
