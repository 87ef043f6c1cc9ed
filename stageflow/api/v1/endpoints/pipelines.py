"""Endpoints listing the pipeline definitions known to the server."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from stageflow.api.v1.schemas.common import ErrorResponse
from stageflow.api.v1.schemas.pipeline import PipelineInfo, PipelineListResponse
from stageflow.core.definition import PipelineDefinition
from stageflow.core.registry import DefinitionRegistry
from stageflow.dependencies import get_definition_registry

router = APIRouter()


def _to_info(definition: PipelineDefinition) -> PipelineInfo:
    return PipelineInfo(
        name=definition.name,
        description=definition.description,
        stages=[stage.name for stage in definition.stages],
        environment=dict(definition.environment),
        trigger_metadata=list(definition.trigger_metadata),
    )


@router.get(
    "/pipelines",
    response_model=PipelineListResponse,
    summary="List pipelines",
    description="Return every pipeline definition discovered at startup.",
)
async def list_pipelines(
    registry: DefinitionRegistry = Depends(get_definition_registry),
) -> PipelineListResponse:
    pipelines = [_to_info(d) for d in registry.list_all()]
    return PipelineListResponse(pipelines=pipelines, total=len(pipelines))


@router.get(
    "/pipelines/{name}",
    response_model=PipelineInfo,
    responses={404: {"model": ErrorResponse}},
    summary="Describe a pipeline",
)
async def get_pipeline(
    name: str,
    registry: DefinitionRegistry = Depends(get_definition_registry),
) -> PipelineInfo:
    return _to_info(registry.get(name))
