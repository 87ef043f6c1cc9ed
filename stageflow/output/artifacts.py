"""Artifact sink -- named byte content deposited by stages during a run.

Artifacts are written under ``<root_dir>/<run_id>/<name>`` so they survive
the run for inspection.  Names may contain ``/`` to group artifacts per
stage (``build/test/0.log``); every segment is sanitised so nothing is
written outside the run directory.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import aiofiles  # type: ignore[import-untyped]

from stageflow.core.models import ArtifactRef
from stageflow.utils.exceptions import ArtifactStorageError
from stageflow.utils.file_utils import ensure_dir, safe_filename, safe_relative_path
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)


class ArtifactSink:
    """Stores run artifacts on the local filesystem.

    Parameters
    ----------
    root_dir:
        Directory holding one sub-directory per run.  Created if missing.
    """

    def __init__(self, root_dir: str | Path = "./artifacts") -> None:
        self.root_dir: Path = ensure_dir(root_dir)

    def run_dir(self, run_id: str) -> Path:
        return self.root_dir / safe_filename(run_id)

    def path_for(self, run_id: str, name: str) -> Path:
        return self.run_dir(run_id) / safe_relative_path(name)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    async def store(
        self,
        run_id: str,
        name: str,
        content: bytes,
        owner: str = "",
    ) -> ArtifactRef:
        """Persist *content* as artifact *name* of run *run_id*.

        Raises
        ------
        ArtifactStorageError
            When the name is unusable or the file cannot be written.
        """
        try:
            path = self.path_for(run_id, name)
        except ValueError as exc:
            raise ArtifactStorageError(str(exc)) from exc

        try:
            ensure_dir(path.parent)
            async with aiofiles.open(path, mode="wb") as fh:
                await fh.write(content)
        except OSError as exc:
            raise ArtifactStorageError(f"Cannot write artifact '{name}': {exc}") from exc

        ref = ArtifactRef(
            name=str(safe_relative_path(name)),
            path=str(path.resolve()),
            size_bytes=len(content),
            sha256=hashlib.sha256(content).hexdigest(),
            owner=owner,
        )
        logger.info(
            "artifact_stored",
            run_id=run_id,
            artifact=ref.name,
            size_bytes=ref.size_bytes,
            owner=owner,
        )
        return ref

    async def store_file(
        self,
        run_id: str,
        name: str,
        source: str | Path,
        owner: str = "",
    ) -> ArtifactRef:
        """Copy an existing file into the run's artifacts."""
        source = Path(source)
        try:
            async with aiofiles.open(source, mode="rb") as fh:
                content = await fh.read()
        except OSError as exc:
            raise ArtifactStorageError(f"Cannot read '{source}': {exc}") from exc
        return await self.store(run_id, name, content, owner=owner)

    async def store_json(self, run_id: str, name: str, payload: Any) -> ArtifactRef:
        content = json.dumps(payload, indent=2, sort_keys=True, default=str).encode("utf-8")
        return await self.store(run_id, name, content)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get_path(self, run_id: str, name: str) -> Path:
        """Return the on-disk path of an artifact.

        Raises :class:`FileNotFoundError` when it does not exist.
        """
        try:
            path = self.path_for(run_id, name)
        except ValueError as exc:
            raise FileNotFoundError(name) from exc
        if not path.is_file():
            raise FileNotFoundError(str(path))
        return path

    def list_artifacts(self, run_id: str) -> list[str]:
        """Return the artifact names stored for *run_id*, sorted."""
        run_dir = self.run_dir(run_id)
        if not run_dir.is_dir():
            return []
        return sorted(
            p.relative_to(run_dir).as_posix() for p in run_dir.rglob("*") if p.is_file()
        )
