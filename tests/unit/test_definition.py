"""Tests for definition parsing and loading."""
import json

import pytest

from stageflow.core.definition import (
    StepDefinition,
    load_definition,
    parse_definition,
    step_to_command,
)
from stageflow.core.graph import build_graph
from stageflow.core.models import ResourceKind
from stageflow.utils.exceptions import PipelineDefinitionError
from tests.helpers import SAMPLE_DEFINITION


class TestSteps:
    def test_string_step_is_shell_split(self):
        spec = step_to_command("pytest -k 'not slow'")
        assert spec.argv == ("pytest", "-k", "not slow")

    def test_argv_step(self):
        step = StepDefinition(argv=["echo", "a b"], allow_failure=True, env={"DEBUG": True})
        spec = step.to_command()
        assert spec.argv == ("echo", "a b")
        assert spec.allow_failure
        assert spec.env == {"DEBUG": "true"}

    def test_exactly_one_command_form(self):
        with pytest.raises(ValueError):
            StepDefinition()
        with pytest.raises(ValueError):
            StepDefinition(run="a", argv=["b"])

    def test_default_timeout_applies_when_unset(self):
        assert step_to_command("make", default_timeout=30).timeout == 30
        assert step_to_command(StepDefinition(run="make", timeout=5), 30).timeout == 5

    def test_resources(self):
        step = StepDefinition(
            run="docker run -d --name db postgres",
            resources=[{"id": "db", "kind": "container", "release": "docker rm -f db"}],
        )
        (resource,) = step.to_command().resources
        assert resource.kind == ResourceKind.CONTAINER
        assert resource.release == ("docker", "rm", "-f", "db")


class TestParseDefinition:
    def test_environment_values_stringified(self):
        definition = parse_definition(
            {"name": "p", "environment": {"PUSH": False, "N": 3}, "stages": []}
        )
        assert definition.environment == {"PUSH": "false", "N": "3"}

    def test_problems_listed(self):
        with pytest.raises(PipelineDefinitionError) as exc_info:
            parse_definition({"stages": [{"steps": ["x"]}]})
        problems = exc_info.value.problems
        assert any(p.startswith("name:") for p in problems)
        assert any(p.startswith("stages.0.name") for p in problems)

    def test_not_a_mapping(self):
        with pytest.raises(PipelineDefinitionError):
            parse_definition(["not", "a", "mapping"])

    def test_invalid_option(self):
        with pytest.raises(PipelineDefinitionError):
            parse_definition(
                {"name": "p", "stages": [], "options": {"allowed_failure_outcome": "failure"}}
            )


class TestLoadDefinition:
    def test_json(self, tmp_path):
        path = tmp_path / "p.json"
        path.write_text(json.dumps({"name": "p", "stages": [{"name": "a", "steps": ["true"]}]}))
        assert load_definition(path).name == "p"

    def test_yaml_syntax_error(self, tmp_path):
        path = tmp_path / "p.yaml"
        path.write_text("name: [unclosed\n")
        with pytest.raises(PipelineDefinitionError):
            load_definition(path)

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "p.toml"
        path.write_text("name = 'p'")
        with pytest.raises(PipelineDefinitionError):
            load_definition(path)

    def test_bundled_sample_builds(self):
        graph = build_graph(load_definition(SAMPLE_DEFINITION))
        assert graph.name == "service"
        assert graph.find("service/checks/lint") is not None
