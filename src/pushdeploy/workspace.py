"""Per-run checkout directories under a managed root.

Each run gets ``<root>/<repository>-<run_id>``; the directory is removed
when the ``checkout`` context exits, however it exits.
"""

from __future__ import annotations

import shutil
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from pushdeploy.logging import get_logger
from pushdeploy.models import validate_name

log = get_logger("pushdeploy.workspace")


class WorkspaceManager:
    """Hands out exclusive workspace paths and cleans them up."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, repository_name: str, run_id: str) -> Path:
        validate_name(repository_name)
        validate_name(run_id, "run id")
        return self._root / f"{repository_name}-{run_id}"

    @asynccontextmanager
    async def checkout(self, repository_name: str, run_id: str) -> AsyncIterator[Path]:
        """Reserve a fresh workspace path for one run.

        The path itself is left absent so ``git clone`` can create it; only
        the parent is created here.
        """
        path = self.path_for(repository_name, run_id)
        self._root.mkdir(parents=True, exist_ok=True)
        if path.exists():
            # Left over from a crashed process reusing the same run id.
            self._remove(path)
        log.debug("workspace_reserved", path=str(path))
        try:
            yield path
        finally:
            self._remove(path)

    def _remove(self, path: Path) -> None:
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            log.error("workspace_cleanup_failed", path=str(path))
        else:
            log.debug("workspace_released", path=str(path))

    def sweep(self) -> int:
        """Remove every directory under the root. Call only when no run is active."""
        if not self._root.exists():
            return 0
        removed = 0
        for child in self._root.iterdir():
            if child.is_dir():
                self._remove(child)
                removed += 1
        if removed:
            log.info("workspace_sweep", removed=removed)
        return removed
