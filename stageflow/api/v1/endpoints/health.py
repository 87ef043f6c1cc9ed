from fastapi import APIRouter

from stageflow import __version__

router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "stageflow", "version": __version__}
