"""Tests for the definition registry."""
import pytest

from stageflow.core.definition import parse_definition
from stageflow.core.registry import DefinitionRegistry
from stageflow.utils.exceptions import DefinitionNotFoundError, PipelineDefinitionError
from tests.helpers import SAMPLE_DEFINITION


class TestDefinitionRegistry:
    def test_discover_skips_invalid_files(self, tmp_path):
        (tmp_path / "good.yaml").write_text(SAMPLE_DEFINITION.read_text())
        (tmp_path / "bad.yml").write_text("name: bad\nstages:\n  - name: a\n    parallel: []\n")
        (tmp_path / "notes.txt").write_text("ignored")

        registry = DefinitionRegistry()
        assert registry.discover(tmp_path) == 1
        assert "service" in registry
        assert "bad" not in registry
        assert len(registry) == 1

    def test_discover_missing_directory(self, tmp_path):
        assert DefinitionRegistry().discover(tmp_path / "nope") == 0

    def test_lookup(self):
        registry = DefinitionRegistry(default_timeout=60)
        graph = registry.register(parse_definition({"name": "p", "stages": [{"name": "a", "steps": ["make"]}]}))

        assert registry.graph("p") is graph
        assert registry.get("p").name == "p"
        assert graph.find("p/a").body[0].timeout == 60
        assert [d.name for d in registry.list_all()] == ["p"]

    def test_unknown_name(self):
        registry = DefinitionRegistry()
        with pytest.raises(DefinitionNotFoundError):
            registry.get("missing")
        with pytest.raises(DefinitionNotFoundError):
            registry.graph("missing")

    def test_invalid_definition_not_registered(self):
        registry = DefinitionRegistry()
        with pytest.raises(PipelineDefinitionError):
            registry.register(parse_definition({"name": "p", "stages": []}))
        assert "p" not in registry
