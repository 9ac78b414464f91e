"""Source fetch capability backed by the ``git`` CLI."""

from __future__ import annotations

import os
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

from pushdeploy.errors import FetchFailed
from pushdeploy.logging import get_logger
from pushdeploy.models import Credentials
from pushdeploy.utils import redact, run_command

log = get_logger("pushdeploy.source")


def is_trusted_source(source_url: str, source_host: str) -> bool:
    """True when *source_url* is an ``http(s)`` URL on *source_host*."""
    if not source_host:
        return False
    parts = urlsplit(source_url)
    return parts.scheme in ("http", "https") and (parts.hostname or "") == source_host.lower()


def authenticated_url(source_url: str, credentials: Credentials | None, source_host: str) -> str:
    """Embed *credentials* into a URL on the trusted *source_host*.

    Any other URL (another host, ssh, local paths) is returned as-is, as is
    a URL that already names a user.
    """
    if credentials is None or not credentials.username:
        return source_url
    if not is_trusted_source(source_url, source_host):
        return source_url
    parts = urlsplit(source_url)
    if "@" in parts.netloc:
        return source_url
    userinfo = quote(credentials.username, safe="")
    if credentials.password:
        userinfo += ":" + quote(credentials.password, safe="")
    return urlunsplit(parts._replace(netloc=f"{userinfo}@{parts.netloc}"))


class GitSource:
    """Clones a repository with its full history into a destination path."""

    def __init__(
        self, git_binary: str = "git", timeout: float = 300, source_host: str = "github.com"
    ) -> None:
        self._git = git_binary
        self._timeout = timeout
        self._source_host = source_host

    async def fetch(
        self,
        source_url: str,
        credentials: Credentials | None,
        dest: Path,
    ) -> None:
        """Clone *source_url* into *dest*.

        Never shallow: the version number is derived from the full
        first-parent history.
        """
        url = authenticated_url(source_url, credentials, self._source_host)
        secrets = [credentials.password, quote(credentials.password, safe="")] if credentials else []
        dest.parent.mkdir(parents=True, exist_ok=True)

        log.info("source_fetch_started", url=source_url, dest=str(dest))
        result = await run_command(
            [self._git, "clone", "--quiet", "--", url, str(dest)],
            cwd=dest.parent,
            timeout=self._timeout,
            env=_git_env(),
            secrets=secrets,
        )
        if not result.ok:
            raise FetchFailed(
                f"Could not clone {redact(source_url, secrets)}",
                cause=result.describe(),
            )
        log.info("source_fetch_complete", url=source_url)


def _git_env() -> dict[str, str]:
    """Environment for non-interactive git: never prompt for credentials."""
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env
