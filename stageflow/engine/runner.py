"""Command runner -- the engine's only way of touching the outside world.

:class:`CommandRunner` executes one :class:`CommandSpec` as a subprocess and
returns an immutable :class:`CommandResult`.  It never raises because a
command failed: a non-zero exit, a timeout and a process that could not be
started are all encoded in the result.

* ``${NAME}`` placeholders in argv, the working directory and overlay values
  are expanded from the run environment (unknown names are left as-is).
* The child environment is the host environment, overlaid by the run
  environment, overlaid by the command's own ``env`` (last one wins).
* On timeout the whole process group is killed, the exit code is set to
  :data:`TIMEOUT_EXIT_CODE`, and the output captured so far is kept.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from string import Template
from typing import Mapping

from stageflow.core.models import (
    SPAWN_FAILURE_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    CommandResult,
    CommandSpec,
)
from stageflow.utils.logging import get_logger

logger = get_logger("engine.runner")

_CHUNK_SIZE = 64 * 1024
# How long to keep reading pipes after a kill before giving up on them.
_DRAIN_GRACE_SECONDS = 2.0


def expand(value: str, environment: Mapping[str, str]) -> str:
    """Substitute ``${NAME}`` / ``$NAME`` from *environment*; ``$$`` is a literal ``$``."""
    return Template(value).safe_substitute(environment)


class CommandRunner:
    """Run external commands on the local host.

    Parameters
    ----------
    max_output_bytes:
        Per-stream capture limit.  Output beyond it is read and discarded so
        the child never blocks on a full pipe.
    host_environment:
        Base environment inherited by every child; defaults to ``os.environ``.
    """

    def __init__(
        self,
        max_output_bytes: int = 10 * 1024 * 1024,
        host_environment: Mapping[str, str] | None = None,
    ) -> None:
        self.max_output_bytes = max_output_bytes
        self.host_environment = host_environment
        self.logger = get_logger("engine.runner")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        spec: CommandSpec,
        environment: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Execute *spec* and return its result.

        Parameters
        ----------
        spec:
            The command to run.
        environment:
            The run environment used for placeholder expansion and layered
            between the host environment and ``spec.env``.
        """
        environment = environment or {}
        argv = tuple(expand(arg, environment) for arg in spec.argv)
        cwd = expand(spec.working_dir, environment) if spec.working_dir else None
        child_env = self._child_environment(spec, environment)

        start = time.monotonic()
        self.logger.info("command_start", command=spec.label, argv=list(argv), cwd=cwd)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=child_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            duration = time.monotonic() - start
            self.logger.error("command_spawn_failed", command=spec.label, error=str(exc))
            return CommandResult(
                argv=argv,
                exit_code=SPAWN_FAILURE_EXIT_CODE,
                stderr=str(exc).encode(),
                duration=duration,
                spawn_error=str(exc),
            )

        stdout_buf = bytearray()
        stderr_buf = bytearray()
        readers = [
            asyncio.create_task(self._drain(proc.stdout, stdout_buf)),
            asyncio.create_task(self._drain(proc.stderr, stderr_buf)),
        ]

        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout=spec.timeout)
        except asyncio.TimeoutError:
            timed_out = True
            self.logger.warning("command_timeout", command=spec.label, timeout=spec.timeout)
            await self._terminate(proc)
        finally:
            # Also reached when the enclosing task is cancelled.
            if proc.returncode is None:
                await self._terminate(proc)
            await self._finish_readers(readers)

        duration = time.monotonic() - start
        exit_code = TIMEOUT_EXIT_CODE if timed_out else proc.returncode
        result = CommandResult(
            argv=argv,
            exit_code=exit_code,
            stdout=bytes(stdout_buf),
            stderr=bytes(stderr_buf),
            duration=duration,
            timed_out=timed_out,
        )

        log = self.logger.info if result.succeeded else self.logger.warning
        log(
            "command_complete",
            command=spec.label,
            exit_code=result.exit_code,
            timed_out=timed_out,
            duration=round(duration, 4),
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _child_environment(
        self,
        spec: CommandSpec,
        environment: Mapping[str, str],
    ) -> dict[str, str]:
        host = os.environ if self.host_environment is None else self.host_environment
        merged = dict(host)
        merged.update(environment)
        merged.update({key: expand(value, environment) for key, value in spec.env.items()})
        return merged

    async def _drain(self, stream: asyncio.StreamReader | None, buffer: bytearray) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_CHUNK_SIZE)
            if not chunk:
                return
            room = self.max_output_bytes - len(buffer)
            if room > 0:
                buffer.extend(chunk[:room])

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """Kill *proc* together with any children it started."""
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()

    @staticmethod
    async def _finish_readers(readers: list[asyncio.Task]) -> None:
        _, pending = await asyncio.wait(readers, timeout=_DRAIN_GRACE_SECONDS)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
