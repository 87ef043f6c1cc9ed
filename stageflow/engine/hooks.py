"""Post-hook execution for stage nodes and for the whole graph.

Hooks run after a node (or the run) reaches its outcome.  A failing hook is
recorded on its :class:`HookRecord` and annotates the run, but it never
changes the outcome that triggered it, and it never stops the hooks that
come after it -- in particular ``cleanup`` always runs.
"""

from __future__ import annotations

import traceback
from typing import TYPE_CHECKING, Iterable

from stageflow.core.graph import Hooks
from stageflow.core.models import CommandSpec, HookRecord, HookTrigger, Outcome
from stageflow.utils.exceptions import CommandFailedError, HookFailureError
from stageflow.utils.logging import get_logger

if TYPE_CHECKING:
    from stageflow.core.context import RunContext
    from stageflow.engine.executor import StageExecutor

logger = get_logger("engine.hooks")

_GRAPH_OUTCOME_TRIGGERS = {
    Outcome.SUCCESS: HookTrigger.SUCCESS,
    Outcome.SKIPPED: HookTrigger.SUCCESS,
    Outcome.UNSTABLE: HookTrigger.UNSTABLE,
    Outcome.FAILURE: HookTrigger.FAILURE,
    Outcome.ABORTED: HookTrigger.ABORTED,
}


def node_hook_order(outcome: Outcome) -> list[HookTrigger]:
    """Triggers fired after a node: its outcome, then ``always``, then ``cleanup``."""
    return [HookTrigger.for_outcome(outcome), HookTrigger.ALWAYS, HookTrigger.CLEANUP]


def graph_hook_order(outcome: Outcome) -> list[HookTrigger]:
    """Triggers fired after the run: ``always`` then one outcome hook.

    Graph ``cleanup`` is not listed here; the pipeline runs it on its own
    so that it also fires when the run is cancelled.
    """
    return [HookTrigger.ALWAYS, _GRAPH_OUTCOME_TRIGGERS[outcome]]


class HookRunner:
    """Runs the hook commands declared for a node or for the graph.

    Parameters
    ----------
    executor:
        Supplies :meth:`StageExecutor.run_command`, so hook commands are
        logged and archived exactly like stage commands.
    ctx:
        The run context, annotated when a hook fails.
    """

    def __init__(self, executor: "StageExecutor", ctx: "RunContext") -> None:
        self.executor = executor
        self.ctx = ctx

    async def run_all(
        self,
        owner: str,
        hooks: Hooks,
        triggers: Iterable[HookTrigger],
    ) -> list[HookRecord]:
        """Run the hooks of *owner* for each trigger in order, skipping
        triggers with nothing declared."""
        records: list[HookRecord] = []
        for trigger in triggers:
            commands = hooks.get(trigger)
            if not commands:
                continue
            records.append(await self.run_hook(owner, trigger, commands))
        return records

    async def run_hook(
        self,
        owner: str,
        trigger: HookTrigger,
        commands: tuple[CommandSpec, ...],
    ) -> HookRecord:
        """Run one hook's commands; stop at the first non-allowed failure."""
        record = HookRecord(owner=owner, trigger=trigger)
        logger.info("hook_start", owner=owner, trigger=trigger.value, commands=len(commands))

        try:
            for index, spec in enumerate(commands):
                log_name = f"{owner}/post-{trigger.value}-{index:02d}.log"
                result, command_record = await self.executor.run_command(spec, owner, log_name)
                record.commands.append(command_record)
                if spec.allow_failure:
                    continue
                try:
                    result.check()
                except CommandFailedError as exc:
                    raise HookFailureError(owner, trigger.value, str(exc)) from exc
        except HookFailureError as exc:
            self._fail(record, exc)
        except Exception as exc:
            logger.error(
                "hook_unexpected_error",
                owner=owner,
                trigger=trigger.value,
                error=str(exc),
                traceback=traceback.format_exc(),
            )
            self._fail(record, HookFailureError(owner, trigger.value, f"unexpected error: {exc}"))
        else:
            logger.info("hook_complete", owner=owner, trigger=trigger.value)

        return record

    def _fail(self, record: HookRecord, error: HookFailureError) -> None:
        record.succeeded = False
        record.error = str(error)
        self.ctx.annotate(str(error))
