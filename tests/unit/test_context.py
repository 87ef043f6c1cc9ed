"""Tests for the run context."""
import asyncio

import pytest

from stageflow.core.context import RunContext, TriggerEvent, resolve_environment
from stageflow.core.models import ArtifactRef, Outcome
from stageflow.utils.exceptions import OutcomeAlreadyFinalizedError


class TestResolveEnvironment:
    def test_priority(self):
        trigger = TriggerEvent(branch="dev", parameters={"A": "param"})
        env = resolve_environment(
            {"A": "default", "B": "default", "C": "default"},
            trigger,
            run_id="r1",
            process_env={"A": "process", "B": "process"},
        )
        assert env["A"] == "param"
        assert env["B"] == "process"
        assert env["C"] == "default"

    def test_builtins_cannot_be_overridden(self):
        trigger = TriggerEvent(
            branch="dev", build_number=3, revision="f00", parameters={"BRANCH_NAME": "x"}
        )
        env = resolve_environment({"BRANCH_NAME": "y"}, trigger, "r1", process_env={})
        assert env["BRANCH_NAME"] == "dev"
        assert env["BUILD_NUMBER"] == "3"
        assert env["GIT_COMMIT"] == "f00"
        assert env["RUN_ID"] == "r1"

    def test_undeclared_process_vars_not_copied(self):
        env = resolve_environment({}, TriggerEvent(branch="m"), "r", process_env={"HOME": "/h"})
        assert "HOME" not in env


class TestRunContext:
    def test_environment_is_read_only(self, ctx):
        assert ctx.environment["MODE"] == "ci"
        with pytest.raises(TypeError):
            ctx.environment["MODE"] = "other"

    def test_trigger_lookup(self, trigger):
        trigger = trigger.model_copy(update={"metadata": {"event": "push"}})
        assert trigger.lookup("branch") == "main"
        assert trigger.lookup("build_number") == "7"
        assert trigger.lookup("event") == "push"
        assert trigger.lookup("author") is None

    def test_finalize_once(self, ctx):
        assert not ctx.finalized
        ctx.finalize(Outcome.SUCCESS)
        assert ctx.outcome == Outcome.SUCCESS
        with pytest.raises(OutcomeAlreadyFinalizedError):
            ctx.finalize(Outcome.FAILURE)
        assert ctx.outcome == Outcome.SUCCESS

    @pytest.mark.asyncio
    async def test_concurrent_artifacts_all_kept(self, ctx):
        refs = [
            ArtifactRef(name=f"a{i}", path=f"/tmp/a{i}", size_bytes=i, sha256="0")
            for i in range(50)
        ]
        await asyncio.gather(*(ctx.add_artifact(ref) for ref in refs))
        assert sorted(a.name for a in ctx.artifacts) == sorted(r.name for r in refs)

    def test_artifacts_snapshot(self, ctx):
        snapshot = ctx.artifacts
        snapshot.append("junk")
        assert ctx.artifacts == []

    @pytest.mark.asyncio
    async def test_abort(self, ctx):
        assert not ctx.abort_requested
        ctx.request_abort("operator")
        ctx.request_abort("second call ignored")
        assert ctx.abort_requested
        assert ctx.abort_reason == "operator"
        await asyncio.wait_for(ctx.wait_for_abort(), timeout=1)

    def test_annotate(self, ctx):
        ctx.annotate("hook failed")
        assert ctx.annotations == ["hook failed"]

    def test_generated_run_id(self):
        a = RunContext.create(TriggerEvent(branch="m"), process_env={})
        b = RunContext.create(TriggerEvent(branch="m"), process_env={})
        assert a.run_id != b.run_id
        assert a.environment["RUN_ID"] == a.run_id
