from contextlib import asynccontextmanager

from fastapi import FastAPI

from stageflow import __version__
from stageflow.api.v1.middleware.error_handler import ErrorHandlerMiddleware
from stageflow.api.v1.middleware.logging_middleware import LoggingMiddleware
from stageflow.api.v1.router import v1_router
from stageflow.config import settings
from stageflow.core.registry import DefinitionRegistry
from stageflow.utils.logging import get_logger, setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(debug=settings.debug, json_output=settings.json_logs)
    logger = get_logger("startup")
    logger.info("Starting Stageflow", version=__version__)

    registry = DefinitionRegistry(default_timeout=settings.default_command_timeout)
    registry.discover(settings.definitions_dir)
    app.state.definition_registry = registry
    logger.info("Definition registry initialized", pipeline_count=len(registry))

    yield

    logger.info("Shutting down")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Stageflow",
        description="Pipeline execution engine for build, test and deploy workflows",
        version=__version__,
        lifespan=lifespan,
    )

    # The last middleware added is the outermost one.
    # 1. Error handler (innermost -- turns engine errors into JSON responses)
    app.add_middleware(ErrorHandlerMiddleware)
    # 2. Request/response logger (outermost -- sees the final status code)
    app.add_middleware(LoggingMiddleware)

    app.include_router(v1_router, prefix="/api/v1")

    return app


app = create_app()


def run() -> None:
    """Serve the API with uvicorn using the configured host and port."""
    import uvicorn

    uvicorn.run("stageflow.main:app", host=settings.host, port=settings.port)
