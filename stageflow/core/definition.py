"""Declarative pipeline definition models and loaders.

A definition is read once at run start, from a mapping or a YAML / JSON
file, and validated with pydantic.  Structural rules that span several
stages (unique sibling names, gate references, parallel groups) are
checked later by :func:`stageflow.core.graph.build_graph`.

Example (YAML)::

    name: service
    environment:
      PUSH_IMAGE: "false"
    stages:
      - name: build
        steps:
          - pip install -r requirements.txt
      - name: checks
        parallel:
          - name: lint
            steps: ["ruff check ."]
          - name: scan
            steps:
              - run: trivy fs .
                allow_failure: true
    post:
      cleanup:
        - docker image prune -f
"""

from __future__ import annotations

import json
import shlex
from pathlib import Path
from typing import Any, Literal, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from stageflow.core.models import CommandSpec, ResourceKind, ResourceSpec
from stageflow.utils.exceptions import PipelineDefinitionError
from stageflow.utils.logging import get_logger

logger = get_logger("core.definition")

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _stringify_mapping(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _stringify(v) for k, v in value.items()}
    return value


class ResourceDefinition(BaseModel):
    id: str
    kind: ResourceKind = ResourceKind.OTHER
    release: Union[str, list[str]]

    def to_spec(self) -> ResourceSpec:
        release = shlex.split(self.release) if isinstance(self.release, str) else self.release
        return ResourceSpec(id=self.id, kind=self.kind, release=tuple(release))


class StepDefinition(BaseModel):
    """A single command in a stage body or a post-hook.

    Either ``run`` (a command line, shell-split) or ``argv`` must be given.
    """

    run: str | None = None
    argv: list[str] | None = None
    name: str | None = None
    allow_failure: bool = False
    timeout: float | None = None
    env: dict[str, str] = {}
    working_dir: str | None = None
    resources: list[ResourceDefinition] = []

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, value: Any) -> Any:
        return _stringify_mapping(value)

    @model_validator(mode="after")
    def _one_command_form(self) -> "StepDefinition":
        if (self.run is None) == (self.argv is None):
            raise ValueError("a step needs exactly one of 'run' or 'argv'")
        return self

    def to_command(self, default_timeout: float | None = None) -> CommandSpec:
        argv = shlex.split(self.run) if self.run is not None else list(self.argv or [])
        return CommandSpec(
            argv=tuple(argv),
            working_dir=self.working_dir,
            env=dict(self.env),
            allow_failure=self.allow_failure,
            timeout=self.timeout if self.timeout is not None else default_timeout,
            resources=tuple(r.to_spec() for r in self.resources),
            name=self.name,
        )


Step = Union[str, StepDefinition]


def step_to_command(step: Step, default_timeout: float | None = None) -> CommandSpec:
    if isinstance(step, str):
        step = StepDefinition(run=step)
    return step.to_command(default_timeout)


class StageDefinition(BaseModel):
    """One stage: a leaf (``steps``), a sequential group (``stages``) or a
    parallel group (``parallel``)."""

    name: str
    when: Any = None
    steps: list[Step] | None = None
    stages: list["StageDefinition"] | None = None
    parallel: list["StageDefinition"] | None = None
    post: dict[str, list[Step]] = {}
    workspace: bool = False
    collect: list[str] = []


class PipelineOptions(BaseModel):
    allowed_failure_outcome: Literal["unstable", "success"] | None = None
    timeout: float | None = Field(default=None, gt=0)
    default_command_timeout: float | None = Field(default=None, gt=0)


class PipelineDefinition(BaseModel):
    """Top-level pipeline description."""

    name: str
    description: str = ""
    environment: dict[str, str] = {}
    trigger_metadata: list[str] = []
    options: PipelineOptions = PipelineOptions()
    stages: list[StageDefinition]
    post: dict[str, list[Step]] = {}

    @field_validator("environment", mode="before")
    @classmethod
    def _coerce_environment(cls, value: Any) -> Any:
        return _stringify_mapping(value)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def parse_definition(data: dict[str, Any]) -> PipelineDefinition:
    """Validate a raw mapping into a :class:`PipelineDefinition`.

    Raises :class:`PipelineDefinitionError` listing every validation problem.
    """
    if not isinstance(data, dict):
        raise PipelineDefinitionError([f"definition must be a mapping, got {type(data).__name__}"])
    try:
        return PipelineDefinition.model_validate(data)
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise PipelineDefinitionError(problems) from exc


def load_definition(path: str | Path) -> PipelineDefinition:
    """Read a YAML or JSON definition file and validate it."""
    path = Path(path)
    if path.suffix not in DEFINITION_SUFFIXES:
        raise PipelineDefinitionError([f"{path.name}: unsupported file type '{path.suffix}'"])

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PipelineDefinitionError([f"{path}: {exc}"]) from exc

    try:
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise PipelineDefinitionError([f"{path.name}: {exc}"]) from exc

    definition = parse_definition(data)
    logger.debug("definition_loaded", path=str(path), pipeline=definition.name)
    return definition
