"""Tests for gate parsing and evaluation."""
import pytest

from stageflow.core.context import RunContext, TriggerEvent
from stageflow.core.gates import (
    ALWAYS,
    AllOf,
    AnyOf,
    BranchEquals,
    EnvEquals,
    Not,
    Reference,
    TriggerEquals,
    parse_gate,
)
from stageflow.utils.exceptions import GateEvaluationError


def _ctx(branch="main", env=None, metadata=None):
    trigger = TriggerEvent(branch=branch, metadata=metadata or {})
    return RunContext(trigger, env or {}, run_id="gates")


class TestParseGate:
    def test_none_is_always(self):
        assert parse_gate(None) is ALWAYS
        assert parse_gate({}) is ALWAYS

    def test_branch(self):
        assert parse_gate({"branch": "main"}) == BranchEquals("main")

    def test_multiple_keys_are_anded(self):
        gate = parse_gate({"branch": "main", "env": {"PUSH": True}})
        assert isinstance(gate, AllOf)
        assert EnvEquals("PUSH", "true") in gate.gates

    def test_list_is_anded(self):
        gate = parse_gate([{"branch": "main"}, {"trigger": {"event": "push"}}])
        assert gate == AllOf((BranchEquals("main"), TriggerEquals("event", "push")))

    def test_nested(self):
        gate = parse_gate({"any": [{"branch": "main"}, {"not": {"branch_matches": "feature/*"}}]})
        assert isinstance(gate, AnyOf)
        assert isinstance(gate.gates[1], Not)

    @pytest.mark.parametrize(
        "spec",
        [
            {"branches": "main"},
            {"branch": ["main"]},
            {"branch_in": []},
            {"env": "X"},
            {"all": []},
            "main",
        ],
    )
    def test_malformed(self, spec):
        with pytest.raises(ValueError):
            parse_gate(spec)

    def test_references(self):
        gate = parse_gate({"all": [{"env": {"A": "1"}}, {"trigger": {"event": "push"}}, {"branch": "x"}]})
        assert set(gate.references()) == {
            Reference("env", "A"),
            Reference("trigger", "event"),
            Reference("trigger", "branch"),
        }


class TestEvaluate:
    def test_branch_forms(self):
        ctx = _ctx(branch="release/1.2")
        assert not parse_gate({"branch": "main"}).evaluate(ctx)
        assert parse_gate({"branch_in": ["main", "release/1.2"]}).evaluate(ctx)
        assert parse_gate({"branch_matches": "release/*"}).evaluate(ctx)

    def test_env(self):
        ctx = _ctx(env={"DEPLOY": "true"})
        assert parse_gate({"env": {"DEPLOY": True}}).evaluate(ctx)
        assert not parse_gate({"env": {"DEPLOY": "false"}}).evaluate(ctx)

    def test_trigger_metadata(self):
        ctx = _ctx(metadata={"event": "tag"})
        assert parse_gate({"trigger": {"event": "tag"}}).evaluate(ctx)
        assert parse_gate({"not": {"trigger": {"event": "push"}}}).evaluate(ctx)

    def test_missing_env_key_raises(self):
        with pytest.raises(GateEvaluationError):
            parse_gate({"env": {"NOPE": "1"}}).evaluate(_ctx())

    def test_missing_reference_raises_even_when_short_circuit_possible(self):
        gate = parse_gate({"any": [{"branch": "main"}, {"trigger": {"event": "push"}}]})
        with pytest.raises(GateEvaluationError):
            gate.evaluate(_ctx(branch="main"))

    def test_deterministic(self):
        ctx = _ctx(branch="main", env={"A": "1"})
        gate = parse_gate({"branch": "main", "env": {"A": "1"}})
        assert {gate.evaluate(ctx) for _ in range(5)} == {True}

    def test_describe(self):
        assert parse_gate({"branch": "main"}).describe() == "branch == 'main'"
        assert ALWAYS.describe() == "always"
