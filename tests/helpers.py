"""Shared test doubles and builders."""

import asyncio
import shlex
import sys
from pathlib import Path

from stageflow.core.definition import parse_definition
from stageflow.core.graph import build_graph
from stageflow.core.models import CommandResult, CommandSpec
from stageflow.engine.runner import CommandRunner, expand


class RecordingRunner(CommandRunner):
    """Runner double that never spawns a process.

    Understands a tiny command language so definitions stay readable:

    * ``exit N``   -- exits with code N
    * ``true`` / ``false``
    * ``sleep S``  -- sleeps S seconds, exits 0
    * ``timeout``  -- reports a timed-out command
    * anything else exits 0

    Every call is recorded in :attr:`calls` as the expanded argv.
    """

    def __init__(self, on_run=None):
        super().__init__()
        self.calls: list[list[str]] = []
        self.environments: list[dict[str, str]] = []
        self.on_run = on_run

    async def run(self, spec: CommandSpec, environment=None) -> CommandResult:
        environment = dict(environment or {})
        argv = [expand(a, environment) for a in spec.argv]
        self.calls.append(argv)
        self.environments.append({**environment, **spec.env})
        if self.on_run is not None:
            self.on_run(argv)

        program = argv[0]
        timed_out = False
        if program == "exit":
            code = int(argv[1])
        elif program == "false":
            code = 1
        elif program == "sleep":
            await asyncio.sleep(float(argv[1]))
            code = 0
        elif program == "timeout":
            code, timed_out = 124, True
        else:
            code = 0
        return CommandResult(
            argv=tuple(argv),
            exit_code=code,
            stdout=" ".join(argv).encode(),
            timed_out=timed_out,
        )

    def ran(self, command: str) -> bool:
        return shlex.split(command) in self.calls


def py(code: str) -> list[str]:
    """argv running *code* with the current interpreter."""
    return [sys.executable, "-c", code]


def make_graph(stages, **extra):
    data = {"name": extra.pop("name", "demo"), "stages": stages}
    data.update(extra)
    return build_graph(parse_definition(data))




SAMPLE_DEFINITION = Path(__file__).resolve().parents[1] / "pipelines" / "service.yaml"
