import pytest

from stageflow.core.context import RunContext, TriggerEvent
from stageflow.output.artifacts import ArtifactSink
from tests.helpers import RecordingRunner


@pytest.fixture
def trigger():
    return TriggerEvent(branch="main", build_number=7, revision="abc123")


@pytest.fixture
def ctx(trigger):
    return RunContext.create(trigger, {"MODE": "ci"}, run_id="run-test", process_env={})


@pytest.fixture
def recording_runner():
    return RecordingRunner()


@pytest.fixture
def sink(tmp_path):
    return ArtifactSink(tmp_path / "artifacts")
