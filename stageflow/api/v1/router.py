from fastapi import APIRouter

from stageflow.api.v1.endpoints import health, pipelines, runs

v1_router = APIRouter()
v1_router.include_router(health.router, tags=["health"])
v1_router.include_router(pipelines.router, tags=["pipelines"])
v1_router.include_router(runs.router, tags=["runs"])
