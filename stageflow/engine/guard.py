"""Resource guard -- guaranteed teardown of ephemeral resources.

Containers, temporary directories and background processes created during a
run are registered with the :class:`ResourceGuard`.  Each one is released
right after the stage that created it finishes (:meth:`release_owned_by`)
and, whatever happens, by :meth:`release_all` when the run ends.

Release is idempotent, runs in reverse registration order (last created,
first torn down), and never raises: a failing release is logged and the
guard moves on to the next resource.
"""

from __future__ import annotations

import inspect
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Union

from stageflow.core.models import CommandSpec, ResourceKind
from stageflow.engine.runner import CommandRunner
from stageflow.utils.exceptions import ResourceReleaseError
from stageflow.utils.logging import get_logger

logger = get_logger("engine.guard")

ReleaseCallable = Callable[[], Union[None, Awaitable[None]]]
ReleaseAction = Union[CommandSpec, ReleaseCallable]


@dataclass
class ManagedResource:
    """An ephemeral resource owned by the guard until released.

    Attributes:
        id: Identifier shown in logs (container name, directory path, ...).
        kind: Resource category.
        release_action: Command run through the runner, or a callable /
            coroutine function performing the teardown.
        owner: Path of the stage node that created the resource.
    """

    id: str
    kind: ResourceKind
    release_action: ReleaseAction
    owner: str = ""
    handle: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    released: bool = False
    error: str = ""


def _remove_tree(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)


class ResourceGuard:
    """Tracks managed resources for one run.

    Parameters
    ----------
    runner:
        Used for release actions expressed as :class:`CommandSpec`.
    environment:
        Run environment handed to the runner for those commands.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        environment: dict[str, str] | None = None,
    ) -> None:
        self.runner = runner or CommandRunner()
        self.environment = dict(environment or {})
        self._resources: dict[str, ManagedResource] = {}
        self._order: list[str] = []
        self.errors: list[ResourceReleaseError] = []

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, resource: ManagedResource) -> str:
        """Take ownership of *resource* and return its handle."""
        self._resources[resource.handle] = resource
        self._order.append(resource.handle)
        logger.info(
            "resource_registered",
            resource=resource.id,
            kind=resource.kind.value,
            owner=resource.owner,
        )
        return resource.handle

    def temp_directory(self, owner: str = "", prefix: str = "stageflow-") -> Path:
        """Create a temporary directory and register it for removal."""
        path = Path(tempfile.mkdtemp(prefix=prefix))
        self.register(
            ManagedResource(
                id=str(path),
                kind=ResourceKind.DIRECTORY,
                release_action=lambda: _remove_tree(path),
                owner=owner,
            )
        )
        return path

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(self, handle: str) -> bool:
        """Release the resource behind *handle*.

        Returns ``True`` when the release action ran without error.  Unknown
        or already released handles are a no-op returning ``False``.
        """
        resource = self._resources.get(handle)
        if resource is None:
            return False

        if resource.released:
            return False
        resource.released = True

        try:
            await self._run_release(resource)
        except Exception as exc:
            error = ResourceReleaseError(resource.id, str(exc) or type(exc).__name__)
            resource.error = str(error)
            self.errors.append(error)
            logger.error(
                "resource_release_failed",
                resource=resource.id,
                owner=resource.owner,
                error=str(exc),
            )
            return False

        logger.info("resource_released", resource=resource.id, owner=resource.owner)
        return True

    async def release_owned_by(self, owner: str) -> list[str]:
        """Release every live resource registered by *owner*, newest first."""
        handles = [
            h for h in reversed(self._order)
            if self._resources[h].owner == owner and not self._resources[h].released
        ]
        return await self._release_many(handles)

    async def release_all(self) -> list[str]:
        """Release everything still live, newest first.  Safe to call again."""
        handles = [h for h in reversed(self._order) if not self._resources[h].released]
        if handles:
            logger.info("release_all", pending=len(handles))
        return await self._release_many(handles)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def live(self) -> list[ManagedResource]:
        return [self._resources[h] for h in self._order if not self._resources[h].released]

    def __len__(self) -> int:
        return len(self._order)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _release_many(self, handles: list[str]) -> list[str]:
        released: list[str] = []
        for handle in handles:
            resource = self._resources[handle]
            if await self.release(handle):
                released.append(resource.id)
        return released

    async def _run_release(self, resource: ManagedResource) -> None:
        action = resource.release_action
        if isinstance(action, CommandSpec):
            result = await self.runner.run(action, self.environment)
            result.check()
            return

        outcome = action()
        if inspect.isawaitable(outcome):
            await outcome
