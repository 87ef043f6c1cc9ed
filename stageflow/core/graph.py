"""Stage graph construction and validation.

:func:`build_graph` turns a :class:`~stageflow.core.definition.PipelineDefinition`
into an immutable tree of :class:`StageNode` objects.  The pipeline itself
becomes the sequential root node; each stage becomes a leaf (it has
``steps``), a sequential group (``stages``) or a parallel group
(``parallel``).

All structural checks happen here, before anything executes, and every
problem found is reported at once in a single
:class:`~stageflow.utils.exceptions.PipelineDefinitionError`.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterator, Mapping

from pydantic import ValidationError

from stageflow.core.context import BUILTIN_ENV_KEYS, BUILTIN_TRIGGER_FIELDS
from stageflow.core.definition import (
    PipelineDefinition,
    PipelineOptions,
    StageDefinition,
    Step,
    step_to_command,
)
from stageflow.core.gates import ALWAYS, Gate, parse_gate
from stageflow.core.models import CommandSpec, HookTrigger, StageKind
from stageflow.utils.exceptions import PipelineDefinitionError
from stageflow.utils.file_utils import safe_filename
from stageflow.utils.logging import get_logger

logger = get_logger("core.graph")

Hooks = Mapping[HookTrigger, tuple[CommandSpec, ...]]

_NO_HOOKS: Hooks = MappingProxyType({})


@dataclass(frozen=True)
class StageNode:
    """A named unit of work in the stage graph.

    Attributes:
        name: Unique among its siblings.
        path: Slash-joined names from the root, unique in the graph.
        kind: How ``children`` are scheduled, or ``LEAF`` for a command body.
        gate: Predicate deciding whether the node runs.
        children: Ordered child nodes (empty for leaves).
        body: Commands run in order (leaves only).
        hooks: Post-hook commands keyed by trigger.
        workspace: Run the body inside a fresh temporary directory.
        collect: Files archived as artifacts once the body finishes.
    """

    name: str
    path: str
    kind: StageKind
    gate: Gate = ALWAYS
    children: tuple["StageNode", ...] = ()
    body: tuple[CommandSpec, ...] = ()
    hooks: Hooks = field(default_factory=lambda: _NO_HOOKS)
    workspace: bool = False
    collect: tuple[str, ...] = ()

    def walk(self) -> Iterator["StageNode"]:
        """Yield this node and its descendants depth-first, in declared order."""
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass(frozen=True)
class StageGraph:
    """The validated, immutable pipeline ready for execution."""

    name: str
    root: StageNode
    hooks: Hooks
    environment: Mapping[str, str]
    trigger_fields: frozenset[str]
    options: PipelineOptions

    def walk(self) -> Iterator[StageNode]:
        return self.root.walk()

    def find(self, path: str) -> StageNode | None:
        for node in self.walk():
            if node.path == path:
                return node
        return None

    def __len__(self) -> int:
        return sum(1 for _ in self.walk())


class _GraphBuilder:
    """Collects problems while converting definitions into nodes."""

    def __init__(self, definition: PipelineDefinition, default_timeout: float | None) -> None:
        self.definition = definition
        self.default_timeout = definition.options.default_command_timeout or default_timeout
        self.env_keys = frozenset(definition.environment) | BUILTIN_ENV_KEYS
        self.trigger_fields = frozenset(definition.trigger_metadata) | BUILTIN_TRIGGER_FIELDS
        self.problems: list[str] = []

    def build(self) -> StageGraph:
        if not self.definition.stages:
            self.problems.append(f"{self.definition.name}: pipeline declares no stages")

        root_path = self.definition.name
        self._check_unique_names(root_path, self.definition.stages)
        children = tuple(
            self._build_stage(stage, root_path) for stage in self.definition.stages
        )
        root = StageNode(
            name=self.definition.name,
            path=root_path,
            kind=StageKind.SEQUENTIAL,
            children=children,
        )
        hooks = self._build_hooks(root_path, self.definition.post, root=True)

        if self.problems:
            raise PipelineDefinitionError(self.problems)

        return StageGraph(
            name=self.definition.name,
            root=root,
            hooks=hooks,
            environment=MappingProxyType(dict(self.definition.environment)),
            trigger_fields=self.trigger_fields,
            options=self.definition.options,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _build_stage(self, stage: StageDefinition, parent_path: str) -> StageNode:
        path = f"{parent_path}/{stage.name}"
        kind = self._classify(stage, path)
        gate = self._build_gate(stage, path)

        children: tuple[StageNode, ...] = ()
        groups = stage.parallel if kind == StageKind.PARALLEL else stage.stages
        if kind != StageKind.LEAF and groups:
            self._check_unique_names(path, groups)
            children = tuple(self._build_stage(child, path) for child in groups)

        body: tuple[CommandSpec, ...] = ()
        if kind == StageKind.LEAF:
            body = self._build_commands(path, stage.steps or [])
        elif stage.workspace or stage.collect:
            self.problems.append(f"{path}: 'workspace' and 'collect' apply to stages with steps only")

        return StageNode(
            name=stage.name,
            path=path,
            kind=kind,
            gate=gate,
            children=children,
            body=body,
            hooks=self._build_hooks(path, stage.post),
            workspace=stage.workspace,
            collect=tuple(stage.collect),
        )

    def _classify(self, stage: StageDefinition, path: str) -> StageKind:
        declared = [
            key
            for key, value in (
                ("steps", stage.steps),
                ("stages", stage.stages),
                ("parallel", stage.parallel),
            )
            if value is not None
        ]
        if len(declared) != 1:
            self.problems.append(
                f"{path}: a stage needs exactly one of 'steps', 'stages' or 'parallel'"
                f" (found {declared or 'none'})"
            )
            return StageKind.LEAF if stage.steps is not None else StageKind.SEQUENTIAL

        key = declared[0]
        if key == "steps":
            if not stage.steps:
                self.problems.append(f"{path}: a stage with 'steps' needs at least one step")
            return StageKind.LEAF
        if key == "parallel":
            if not stage.parallel:
                self.problems.append(f"{path}: a parallel stage needs at least one child")
            return StageKind.PARALLEL
        if not stage.stages:
            self.problems.append(f"{path}: a sequential stage needs at least one child")
        return StageKind.SEQUENTIAL

    def _check_unique_names(self, path: str, stages: list[StageDefinition]) -> None:
        counts = Counter(stage.name for stage in stages)
        on_disk: dict[str, list[str]] = defaultdict(list)
        for name, count in counts.items():
            if "/" in name or name in (".", "..") or not safe_filename(name):
                self.problems.append(f"{path}: invalid stage name {name!r}")
                continue
            if count > 1:
                self.problems.append(f"{path}: duplicate stage name '{name}'")
            on_disk[safe_filename(name)].append(name)

        # Artifacts are stored under sanitised names, so siblings must stay
        # distinct after sanitising too.
        for names in on_disk.values():
            if len(names) > 1:
                clashing = " and ".join(f"'{n}'" for n in names)
                self.problems.append(f"{path}: stage names {clashing} collide in artifact paths")

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def _build_gate(self, stage: StageDefinition, path: str) -> Gate:
        try:
            gate = parse_gate(stage.when)
        except ValueError as exc:
            self.problems.append(f"{path}: invalid 'when': {exc}")
            return ALWAYS

        for ref in gate.references():
            known = self.env_keys if ref.scope == "env" else self.trigger_fields
            if ref.name not in known:
                self.problems.append(
                    f"{path}: gate references undeclared {ref.scope} key '{ref.name}'"
                )
        return gate

    # ------------------------------------------------------------------
    # Commands & hooks
    # ------------------------------------------------------------------

    def _build_commands(self, path: str, steps: list[Step]) -> tuple[CommandSpec, ...]:
        commands: list[CommandSpec] = []
        for index, step in enumerate(steps):
            try:
                commands.append(step_to_command(step, self.default_timeout))
            except (ValueError, ValidationError) as exc:
                self.problems.append(f"{path}: step {index}: {exc}")
        return tuple(commands)

    def _build_hooks(self, path: str, post: dict[str, list[Step]], *, root: bool = False) -> Hooks:
        hooks: dict[HookTrigger, tuple[CommandSpec, ...]] = {}
        for key, steps in post.items():
            try:
                trigger = HookTrigger(key)
            except ValueError:
                self.problems.append(f"{path}: unknown post condition '{key}'")
                continue
            if root and trigger == HookTrigger.SKIPPED:
                # A run never ends skipped; an all-skipped run fires 'success'.
                self.problems.append(f"{path}: post condition 'skipped' applies to stages only")
                continue
            hooks[trigger] = self._build_commands(f"{path}[post.{key}]", steps)
        return MappingProxyType(hooks)


def build_graph(
    definition: PipelineDefinition,
    default_timeout: float | None = None,
) -> StageGraph:
    """Validate *definition* and build its immutable :class:`StageGraph`.

    Parameters
    ----------
    definition:
        The parsed pipeline definition.
    default_timeout:
        Command timeout applied to steps that declare none, unless the
        pipeline's own ``options.default_command_timeout`` is set.

    Raises
    ------
    PipelineDefinitionError
        Listing every structural problem found.
    """
    graph = _GraphBuilder(definition, default_timeout).build()
    logger.info("graph_built", pipeline=graph.name, nodes=len(graph))
    return graph
