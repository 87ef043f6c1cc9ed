"""Tests for the outcome lattice and command models."""
import pytest
from pydantic import ValidationError

from stageflow.core.models import (
    CommandRecord,
    CommandResult,
    CommandSpec,
    HookTrigger,
    NodeResult,
    Outcome,
    StageKind,
    worst,
)


class TestWorst:
    def test_empty_is_success(self):
        assert worst([]) == Outcome.SUCCESS

    def test_skipped_ranks_like_success(self):
        assert worst([Outcome.SKIPPED, Outcome.SKIPPED]) == Outcome.SUCCESS
        assert worst([Outcome.SUCCESS, Outcome.SKIPPED]) == Outcome.SUCCESS

    def test_ordering(self):
        assert worst([Outcome.SUCCESS, Outcome.UNSTABLE]) == Outcome.UNSTABLE
        assert worst([Outcome.UNSTABLE, Outcome.FAILURE, Outcome.SUCCESS]) == Outcome.FAILURE
        assert worst([Outcome.FAILURE, Outcome.ABORTED]) == Outcome.ABORTED

    def test_order_independent(self):
        outcomes = [Outcome.UNSTABLE, Outcome.SUCCESS, Outcome.FAILURE]
        assert worst(outcomes) == worst(reversed(outcomes))

    def test_fatal_outcomes(self):
        assert Outcome.FAILURE.is_fatal
        assert Outcome.ABORTED.is_fatal
        assert not Outcome.UNSTABLE.is_fatal
        assert not Outcome.SKIPPED.is_fatal

    def test_hook_trigger_for_outcome(self):
        assert HookTrigger.for_outcome(Outcome.SKIPPED) == HookTrigger.SKIPPED
        assert HookTrigger.for_outcome(Outcome.FAILURE) == HookTrigger.FAILURE


class TestCommandSpec:
    def test_empty_argv_rejected(self):
        with pytest.raises(ValidationError):
            CommandSpec(argv=())

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValidationError):
            CommandSpec(argv=("true",), timeout=0)

    def test_frozen(self):
        spec = CommandSpec(argv=("true",))
        with pytest.raises(ValidationError):
            spec.allow_failure = True

    def test_label(self):
        assert CommandSpec(argv=("make", "test")).label == "make test"
        assert CommandSpec(argv=("make",), name="build").label == "build"


class TestCommandResult:
    def test_failure_kind(self):
        assert CommandResult(argv=("x",), exit_code=0).failure_kind is None
        assert CommandResult(argv=("x",), exit_code=2).failure_kind == "exit_code"
        assert CommandResult(argv=("x",), exit_code=124, timed_out=True).failure_kind == "timeout"
        assert (
            CommandResult(argv=("x",), exit_code=127, spawn_error="not found").failure_kind
            == "spawn"
        )

    def test_record_marks_allowed_failure(self):
        spec = CommandSpec(argv=("scan",), allow_failure=True)
        record = CommandRecord.from_result(spec, CommandResult(argv=("scan",), exit_code=3))
        assert record.allowed_failure
        assert record.exit_code == 3

        ok = CommandRecord.from_result(spec, CommandResult(argv=("scan",), exit_code=0))
        assert not ok.allowed_failure


def test_node_result_find_and_walk():
    leaf = NodeResult(name="b", path="p/a/b", kind=StageKind.LEAF)
    group = NodeResult(name="a", path="p/a", kind=StageKind.SEQUENTIAL, children=[leaf])
    root = NodeResult(name="p", path="p", kind=StageKind.SEQUENTIAL, children=[group])

    assert root.find("p/a/b") is leaf
    assert root.find("p/missing") is None
    assert [n.path for n in root.walk()] == ["p", "p/a", "p/a/b"]
