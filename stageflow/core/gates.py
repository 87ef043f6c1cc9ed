"""Gate predicates deciding whether a stage runs.

A gate is a pure function of the :class:`~stageflow.core.context.RunContext`:
it reads the branch, the resolved environment or the trigger metadata and
returns a boolean, with no side effects.  Gates are parsed once from the
declarative ``when`` block of a stage and expose :meth:`Gate.references` so
the graph builder can reject unknown keys before anything executes.

Declarative forms::

    {"branch": "main"}
    {"branch_in": ["main", "develop"]}
    {"branch_matches": "release/*"}
    {"env": {"DEPLOY_ENABLED": "true"}}
    {"trigger": {"event": "push"}}
    {"all": [...]}, {"any": [...]}, {"not": {...}}

Several keys inside one mapping are combined with AND.
"""

from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Any, Iterator

from stageflow.utils.exceptions import GateEvaluationError

if TYPE_CHECKING:
    from stageflow.core.context import RunContext


@dataclass(frozen=True)
class Reference:
    """A name a gate reads: an environment key or a trigger field."""

    scope: str  # "env" or "trigger"
    name: str

    def __str__(self) -> str:
        return f"{self.scope}.{self.name}"


class Gate:
    """Base class for all predicates."""

    def evaluate(self, ctx: "RunContext") -> bool:
        raise NotImplementedError

    def references(self) -> Iterator[Reference]:
        return iter(())

    def describe(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class Always(Gate):
    def evaluate(self, ctx: "RunContext") -> bool:
        return True

    def describe(self) -> str:
        return "always"


ALWAYS = Always()


@dataclass(frozen=True)
class BranchEquals(Gate):
    branch: str

    def evaluate(self, ctx: "RunContext") -> bool:
        return ctx.branch == self.branch

    def references(self) -> Iterator[Reference]:
        yield Reference("trigger", "branch")

    def describe(self) -> str:
        return f"branch == {self.branch!r}"


@dataclass(frozen=True)
class BranchIn(Gate):
    branches: frozenset[str]

    def evaluate(self, ctx: "RunContext") -> bool:
        return ctx.branch in self.branches

    def references(self) -> Iterator[Reference]:
        yield Reference("trigger", "branch")

    def describe(self) -> str:
        return f"branch in {sorted(self.branches)!r}"


@dataclass(frozen=True)
class BranchMatches(Gate):
    pattern: str

    def evaluate(self, ctx: "RunContext") -> bool:
        return fnmatchcase(ctx.branch, self.pattern)

    def references(self) -> Iterator[Reference]:
        yield Reference("trigger", "branch")

    def describe(self) -> str:
        return f"branch matches {self.pattern!r}"


@dataclass(frozen=True)
class EnvEquals(Gate):
    key: str
    value: str

    def evaluate(self, ctx: "RunContext") -> bool:
        if self.key not in ctx.environment:
            raise GateEvaluationError(f"env.{self.key}", "not present in run environment")
        return ctx.environment[self.key] == self.value

    def references(self) -> Iterator[Reference]:
        yield Reference("env", self.key)

    def describe(self) -> str:
        return f"env.{self.key} == {self.value!r}"


@dataclass(frozen=True)
class TriggerEquals(Gate):
    field: str
    value: str

    def evaluate(self, ctx: "RunContext") -> bool:
        actual = ctx.trigger.lookup(self.field)
        if actual is None:
            raise GateEvaluationError(f"trigger.{self.field}", "missing from trigger event")
        return actual == self.value

    def references(self) -> Iterator[Reference]:
        yield Reference("trigger", self.field)

    def describe(self) -> str:
        return f"trigger.{self.field} == {self.value!r}"


@dataclass(frozen=True)
class AllOf(Gate):
    gates: tuple[Gate, ...]

    def evaluate(self, ctx: "RunContext") -> bool:
        # Every operand is evaluated so that a missing reference surfaces
        # the same way no matter where it sits in the expression.
        results = [g.evaluate(ctx) for g in self.gates]
        return all(results)

    def references(self) -> Iterator[Reference]:
        for gate in self.gates:
            yield from gate.references()

    def describe(self) -> str:
        return "(" + " and ".join(g.describe() for g in self.gates) + ")"


@dataclass(frozen=True)
class AnyOf(Gate):
    gates: tuple[Gate, ...]

    def evaluate(self, ctx: "RunContext") -> bool:
        results = [g.evaluate(ctx) for g in self.gates]
        return any(results)

    def references(self) -> Iterator[Reference]:
        for gate in self.gates:
            yield from gate.references()

    def describe(self) -> str:
        return "(" + " or ".join(g.describe() for g in self.gates) + ")"


@dataclass(frozen=True)
class Not(Gate):
    gate: Gate

    def evaluate(self, ctx: "RunContext") -> bool:
        return not self.gate.evaluate(ctx)

    def references(self) -> Iterator[Reference]:
        return self.gate.references()

    def describe(self) -> str:
        return f"not {self.gate.describe()}"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_gate(spec: Any) -> Gate:
    """Build a :class:`Gate` from its declarative form.

    ``None`` (or an empty mapping) yields :data:`ALWAYS`.  Raises
    :class:`ValueError` for unknown operators or malformed operands; the
    graph builder turns those into definition errors.
    """
    if spec is None:
        return ALWAYS
    if isinstance(spec, Gate):
        return spec
    if isinstance(spec, (list, tuple)):
        return _combine_all([parse_gate(item) for item in spec])
    if not isinstance(spec, dict):
        raise ValueError(f"gate must be a mapping, got {type(spec).__name__}")

    parts: list[Gate] = []
    for op, operand in spec.items():
        parser = _OPERATORS.get(op)
        if parser is None:
            raise ValueError(f"unknown gate operator '{op}'")
        parts.append(parser(operand))
    return _combine_all(parts)


def _combine_all(parts: list[Gate]) -> Gate:
    if not parts:
        return ALWAYS
    if len(parts) == 1:
        return parts[0]
    return AllOf(tuple(parts))


def _parse_branch(operand: Any) -> Gate:
    if not isinstance(operand, str):
        raise ValueError("'branch' expects a branch name")
    return BranchEquals(operand)


def _parse_branch_in(operand: Any) -> Gate:
    if not isinstance(operand, (list, tuple)) or not operand:
        raise ValueError("'branch_in' expects a non-empty list of branch names")
    return BranchIn(frozenset(str(b) for b in operand))


def _parse_branch_matches(operand: Any) -> Gate:
    if not isinstance(operand, str):
        raise ValueError("'branch_matches' expects a glob pattern")
    return BranchMatches(operand)


def _parse_mapping(operand: Any, op: str) -> dict[str, str]:
    if not isinstance(operand, dict) or not operand:
        raise ValueError(f"'{op}' expects a non-empty mapping of name to value")
    return {str(k): _scalar(v) for k, v in operand.items()}


def _parse_env(operand: Any) -> Gate:
    pairs = _parse_mapping(operand, "env")
    return _combine_all([EnvEquals(k, v) for k, v in pairs.items()])


def _parse_trigger(operand: Any) -> Gate:
    pairs = _parse_mapping(operand, "trigger")
    return _combine_all([TriggerEquals(k, v) for k, v in pairs.items()])


def _parse_all(operand: Any) -> Gate:
    if not isinstance(operand, (list, tuple)) or not operand:
        raise ValueError("'all' expects a non-empty list of gates")
    return AllOf(tuple(parse_gate(item) for item in operand))


def _parse_any(operand: Any) -> Gate:
    if not isinstance(operand, (list, tuple)) or not operand:
        raise ValueError("'any' expects a non-empty list of gates")
    return AnyOf(tuple(parse_gate(item) for item in operand))


def _parse_not(operand: Any) -> Gate:
    return Not(parse_gate(operand))


def _scalar(value: Any) -> str:
    # YAML turns `true` into a bool; environment values are always strings.
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


_OPERATORS = {
    "branch": _parse_branch,
    "branch_in": _parse_branch_in,
    "branch_matches": _parse_branch_matches,
    "env": _parse_env,
    "trigger": _parse_trigger,
    "all": _parse_all,
    "any": _parse_any,
    "not": _parse_not,
}
