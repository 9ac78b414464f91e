"""Version numbers derived from repository history.

The version is the number of commits on HEAD's first-parent chain, so every
fast-forward of the branch yields a strictly larger number and merges count
once regardless of how many commits they bring in.
"""

from __future__ import annotations

from pathlib import Path

from pushdeploy.errors import HistoryUnavailable
from pushdeploy.logging import get_logger
from pushdeploy.utils import run_command

log = get_logger("pushdeploy.version")


class VersionResolver:
    """Counts first-parent ancestors of HEAD in a checked-out workspace."""

    def __init__(self, git_binary: str = "git", timeout: float = 30) -> None:
        self._git = git_binary
        self._timeout = timeout

    async def resolve(self, workspace: Path) -> int:
        """Return the version number for the checkout at *workspace*.

        Raises ``HistoryUnavailable`` when the count cannot be trusted: no
        commits, a shallow clone, or a failing git query.
        """
        shallow = await run_command(
            [self._git, "rev-parse", "--is-shallow-repository"],
            cwd=workspace,
            timeout=self._timeout,
        )
        if not shallow.ok:
            raise HistoryUnavailable("Not a readable git checkout", cause=shallow.describe())
        if shallow.stdout.strip() == "true":
            raise HistoryUnavailable("Shallow checkout; first-parent count would be truncated")

        counted = await run_command(
            [self._git, "rev-list", "--count", "--first-parent", "HEAD"],
            cwd=workspace,
            timeout=self._timeout,
        )
        if not counted.ok:
            raise HistoryUnavailable("Could not count commits on HEAD", cause=counted.describe())

        raw = counted.stdout.strip()
        try:
            version = int(raw)
        except ValueError:
            raise HistoryUnavailable(f"Unexpected rev-list output: {raw[:80]!r}") from None
        if version < 1:
            raise HistoryUnavailable("Repository has no commits on HEAD")

        log.info("version_resolved", workspace=str(workspace), version=version)
        return version
