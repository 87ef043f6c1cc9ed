"""Integration tests for API endpoints."""
import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from stageflow.api.v1.endpoints import runs
from stageflow.config import settings
from stageflow.core.registry import DefinitionRegistry
from stageflow.main import create_app
from tests.helpers import SAMPLE_DEFINITION, py


@pytest.fixture
def app(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "artifacts_dir", str(tmp_path / "artifacts"))
    monkeypatch.setattr(runs, "_runs", {})
    application = create_app()
    # Manually initialize the registry since lifespan doesn't run in test
    registry = DefinitionRegistry()
    registry.discover(SAMPLE_DEFINITION.parent)
    application.state.definition_registry = registry
    return application


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _inline(steps, name="inline", **extra):
    return {"name": name, "stages": [{"name": "only", "steps": steps}], **extra}


async def _wait_finished(client, run_id, timeout=10.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        response = await client.get(f"/api/v1/runs/{run_id}")
        data = response.json()
        if data["status"] == "finished":
            return data
        assert asyncio.get_running_loop().time() < deadline, "run did not finish"
        await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/api/v1/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "stageflow"


@pytest.mark.asyncio
async def test_list_pipelines(client):
    response = await client.get("/api/v1/pipelines")
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["pipelines"][0]["name"] == "service"
    assert "publish" in data["pipelines"][0]["stages"]


@pytest.mark.asyncio
async def test_get_unknown_pipeline(client):
    response = await client.get("/api/v1/pipelines/nope")
    assert response.status_code == 404
    assert response.json()["error"] == "DefinitionNotFoundError"


@pytest.mark.asyncio
async def test_trigger_inline_run(client):
    definition = _inline(
        [
            {"argv": py("print('compiled ' + __import__('os').environ['BRANCH_NAME'])")},
            {"argv": py("raise SystemExit(1)"), "allow_failure": True},
        ]
    )
    response = await client.post(
        "/api/v1/runs",
        json={"definition": definition, "branch": "feature/x", "build_number": 12},
    )
    assert response.status_code == 202
    info = response.json()
    assert info["pipeline"] == "inline"

    data = await _wait_finished(client, info["run_id"])
    assert data["outcome"] == "unstable"
    leaf = data["result"]["root"]["children"][0]
    assert leaf["path"] == "inline/only"
    assert [c["exit_code"] for c in leaf["commands"]] == [0, 1]

    response = await client.get(f"/api/v1/runs/{info['run_id']}/artifacts")
    assert response.status_code == 200
    names = [a["name"] for a in response.json()["artifacts"]]
    assert "manifest.json" in names
    assert "inline/only/00.log" in names

    response = await client.get(f"/api/v1/runs/{info['run_id']}/artifacts/inline/only/00.log")
    assert response.status_code == 200
    assert b"compiled feature/x" in response.content

    response = await client.get("/api/v1/runs")
    assert response.json()["total"] == 1


@pytest.mark.asyncio
async def test_trigger_unknown_pipeline(client):
    response = await client.post("/api/v1/runs", json={"pipeline": "nope", "branch": "main"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_trigger_without_pipeline(client):
    response = await client.post("/api/v1/runs", json={"branch": "main"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_trigger_invalid_definition(client):
    definition = {"name": "broken", "stages": [{"name": "p", "parallel": []}]}
    response = await client.post("/api/v1/runs", json={"definition": definition, "branch": "main"})
    assert response.status_code == 422
    data = response.json()
    assert data["error"] == "PipelineDefinitionError"
    assert any("parallel" in p for p in data["problems"])


@pytest.mark.asyncio
async def test_abort_run(client):
    definition = _inline(
        [
            {"argv": py("import time; time.sleep(0.5)")},
            {"argv": py("print('never')")},
        ],
        post={"aborted": [{"argv": py("print('aborted hook')")}]},
    )
    response = await client.post("/api/v1/runs", json={"definition": definition, "branch": "main"})
    run_id = response.json()["run_id"]

    response = await client.post(f"/api/v1/runs/{run_id}/abort", json={"reason": "operator"})
    assert response.status_code == 202
    assert response.json()["abort_requested"] is True

    response = await client.post(f"/api/v1/runs/{run_id}/abort")
    assert response.status_code == 409

    data = await _wait_finished(client, run_id)
    assert data["outcome"] == "aborted"
    assert [h["trigger"] for h in data["result"]["graph_hooks"]] == ["aborted"]

    response = await client.post(f"/api/v1/runs/{run_id}/abort")
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_unknown_run(client):
    response = await client.get("/api/v1/runs/missing")
    assert response.status_code == 404
    response = await client.get("/api/v1/runs/missing/artifacts/x.log")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_finished_runs_are_evicted(client, monkeypatch):
    monkeypatch.setattr(settings, "max_retained_runs", 1)
    definition = _inline([{"argv": py("print('ok')")}])

    first = (await client.post("/api/v1/runs", json={"definition": definition, "branch": "main"})).json()
    await _wait_finished(client, first["run_id"])
    second = (await client.post("/api/v1/runs", json={"definition": definition, "branch": "main"})).json()

    response = await client.get(f"/api/v1/runs/{first['run_id']}")
    assert response.status_code == 404
    response = await client.get("/api/v1/runs")
    assert [r["run_id"] for r in response.json()["runs"]] == [second["run_id"]]
    await _wait_finished(client, second["run_id"])
