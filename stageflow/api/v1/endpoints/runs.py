"""Run trigger, inspection, abort and artifact endpoints.

Runs execute as background asyncio tasks.  A lightweight in-memory store
keeps each run's context (so it can be aborted) and, once finished, its
result.  Build history is not persisted beyond the artifact directory.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from stageflow.api.v1.schemas.common import ErrorResponse
from stageflow.api.v1.schemas.run import (
    AbortRequest,
    RunDetail,
    RunInfo,
    RunListResponse,
    TriggerRequest,
)
from stageflow.config import settings
from stageflow.core.context import RunContext
from stageflow.core.definition import parse_definition
from stageflow.core.graph import StageGraph, build_graph
from stageflow.core.models import PipelineResult
from stageflow.core.registry import DefinitionRegistry
from stageflow.dependencies import get_artifact_sink, get_definition_registry, get_executor
from stageflow.engine.pipeline import PipelineExecutor
from stageflow.output.artifacts import ArtifactSink
from stageflow.utils.exceptions import RunAbortedError, RunNotFoundError
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@dataclass
class RunRecord:
    graph: StageGraph
    ctx: RunContext
    task: asyncio.Task | None = None
    result: PipelineResult | None = None
    error: str = ""

    @property
    def finished(self) -> bool:
        return self.result is not None or bool(self.error)

    def info(self) -> RunInfo:
        return RunInfo(
            run_id=self.ctx.run_id,
            pipeline=self.graph.name,
            branch=self.ctx.branch,
            status="finished" if self.finished else "running",
            outcome=self.result.outcome if self.result else None,
            abort_requested=self.ctx.abort_requested,
        )


# ---------------------------------------------------------------------------
# In-memory run store.
# ---------------------------------------------------------------------------
_runs: dict[str, RunRecord] = {}


def store_run(record: RunRecord) -> None:
    _runs[record.ctx.run_id] = record
    _evict_finished(settings.max_retained_runs)


def _evict_finished(limit: int) -> None:
    """Drop the oldest finished runs until at most *limit* remain.

    Running records are never evicted so they can still be aborted.
    """
    excess = len(_runs) - limit
    if excess <= 0:
        return
    stale = [run_id for run_id, record in _runs.items() if record.finished][:excess]
    for run_id in stale:
        del _runs[run_id]
    if stale:
        logger.debug("runs_evicted", count=len(stale))


def get_run(run_id: str) -> RunRecord:
    record = _runs.get(run_id)
    if record is None:
        raise RunNotFoundError(run_id)
    return record


def _resolve_graph(request: TriggerRequest, registry: DefinitionRegistry) -> StageGraph:
    if request.definition is not None:
        return build_graph(parse_definition(request.definition), settings.default_command_timeout)
    if not request.pipeline:
        raise HTTPException(status_code=422, detail="Either 'pipeline' or 'definition' is required")
    return registry.graph(request.pipeline)


async def _execute(record: RunRecord, executor: PipelineExecutor) -> None:
    try:
        record.result = await executor.run(record.graph, ctx=record.ctx)
    except Exception as exc:
        logger.error(
            "run_crashed",
            run_id=record.ctx.run_id,
            error=str(exc),
            exc_info=True,
        )
        record.error = str(exc) or type(exc).__name__


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/runs",
    response_model=RunInfo,
    status_code=202,
    responses={
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
    summary="Trigger a pipeline run",
    description=(
        "Start a run of a registered pipeline (or of an inline definition) "
        "for the given branch and build metadata.  Returns immediately."
    ),
)
async def trigger_run(
    request: TriggerRequest,
    registry: DefinitionRegistry = Depends(get_definition_registry),
    executor: PipelineExecutor = Depends(get_executor),
) -> RunInfo:
    graph = _resolve_graph(request, registry)
    ctx = executor.create_context(graph, request.to_trigger())
    record = RunRecord(graph=graph, ctx=ctx)
    store_run(record)

    record.task = asyncio.create_task(_execute(record, executor))
    logger.info(
        "run_triggered",
        run_id=ctx.run_id,
        pipeline=graph.name,
        branch=ctx.branch,
        build_number=ctx.trigger.build_number,
    )
    return record.info()


@router.get(
    "/runs",
    response_model=RunListResponse,
    summary="List runs",
)
async def list_runs() -> RunListResponse:
    runs = [record.info() for record in _runs.values()]
    return RunListResponse(runs=runs, total=len(runs))


@router.get(
    "/runs/{run_id}",
    response_model=RunDetail,
    responses={404: {"model": ErrorResponse}},
    summary="Get run status",
    description="Return the run's status and, once finished, its outcome tree and artifacts.",
)
async def get_run_status(run_id: str) -> RunDetail:
    record = get_run(run_id)
    return RunDetail(**record.info().model_dump(), result=record.result, error=record.error)


@router.post(
    "/runs/{run_id}/abort",
    response_model=RunInfo,
    status_code=202,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    summary="Abort a running pipeline",
    description=(
        "Signal the run to stop.  Commands already running finish; remaining "
        "stages are skipped, and post-hooks and resource cleanup still run."
    ),
)
async def abort_run(run_id: str, request: AbortRequest | None = None) -> RunInfo:
    record = get_run(run_id)
    if record.finished:
        raise HTTPException(status_code=409, detail=f"Run {run_id} already finished")
    if record.ctx.abort_requested:
        raise RunAbortedError(record.ctx.abort_reason)
    record.ctx.request_abort((request or AbortRequest()).reason)
    return record.info()


@router.get(
    "/runs/{run_id}/artifacts",
    summary="List run artifacts",
)
async def list_artifacts(
    run_id: str,
    sink: ArtifactSink = Depends(get_artifact_sink),
) -> dict:
    names = sink.list_artifacts(run_id)
    return {
        "run_id": run_id,
        "artifacts": [
            {"name": name, "download_url": f"/api/v1/runs/{run_id}/artifacts/{name}"}
            for name in names
        ],
        "total": len(names),
    }


@router.get(
    "/runs/{run_id}/artifacts/{name:path}",
    response_class=FileResponse,
    responses={404: {"model": ErrorResponse, "description": "Artifact not found"}},
    summary="Download a run artifact",
)
async def download_artifact(
    run_id: str,
    name: str,
    sink: ArtifactSink = Depends(get_artifact_sink),
) -> FileResponse:
    try:
        path = sink.get_path(run_id, name)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail=f"Artifact not found: {name}")
    return FileResponse(path, filename=path.name)
