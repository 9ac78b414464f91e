"""Image build and registry operations backed by the ``docker`` CLI.

The builder is shared by every run. Its only state is the registry login,
which is cached until it expires or a push reports that it went stale.
"""

from __future__ import annotations

import time
from pathlib import Path

from pushdeploy.errors import AuthFailed, BuildFailed, PullFailed, PushFailed
from pushdeploy.logging import get_logger
from pushdeploy.models import LATEST_TAG, Credentials, ImageRef, validate_name
from pushdeploy.utils import CommandResult, run_command

log = get_logger("pushdeploy.images")

# Substrings docker prints when the registry refuses our token.
_AUTH_ERROR_MARKERS = (
    "unauthorized",
    "authentication required",
    "denied: requested access",
    "access to the resource is denied",
)


def _is_auth_error(result: CommandResult) -> bool:
    text = result.stderr.lower()
    return any(marker in text for marker in _AUTH_ERROR_MARKERS)


class ImageBuilder:
    """Builds, tags and publishes images under ``registry_user``."""

    def __init__(
        self,
        registry_user: str,
        registry_server: str = "",
        docker_binary: str = "docker",
        auth_ttl_seconds: float = 3600,
        login_timeout: float = 60,
        pull_timeout: float = 600,
        build_timeout: float = 1800,
        push_timeout: float = 900,
    ) -> None:
        self._user = validate_name(registry_user, "registry user")
        self._server = registry_server
        self._docker = docker_binary
        self._auth_ttl = auth_ttl_seconds
        self._login_timeout = login_timeout
        self._pull_timeout = pull_timeout
        self._build_timeout = build_timeout
        self._push_timeout = push_timeout
        self._authenticated_until: float | None = None

    @property
    def registry_user(self) -> str:
        return self._user

    def image_ref(self, repository_name: str, tag: str) -> ImageRef:
        return ImageRef(self._user, validate_name(repository_name), tag)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated_until is not None and time.monotonic() < self._authenticated_until

    def invalidate_auth(self) -> None:
        self._authenticated_until = None

    async def authenticate(self, credentials: Credentials) -> None:
        """Log in to the registry unless a previous login is still fresh."""
        if self.is_authenticated:
            log.debug("registry_login_cached", user=credentials.username)
            return

        args = [self._docker, "login", "--username", credentials.username, "--password-stdin"]
        if self._server:
            args.append(self._server)
        result = await run_command(
            args,
            timeout=self._login_timeout,
            input_data=credentials.password,
            secrets=[credentials.password],
        )
        if not result.ok:
            self.invalidate_auth()
            raise AuthFailed(
                f"Registry login failed for {credentials.username}", cause=result.describe()
            )
        self._authenticated_until = time.monotonic() + self._auth_ttl
        log.info("registry_login_complete", user=credentials.username, server=self._server or "default")

    # ------------------------------------------------------------------
    # Pull / build / push
    # ------------------------------------------------------------------

    async def pull_latest(self, repository_name: str) -> ImageRef:
        """Pull the currently deployed image to warm the build cache."""
        image = self.image_ref(repository_name, LATEST_TAG)
        result = await run_command(
            [self._docker, "pull", "--quiet", image.render()], timeout=self._pull_timeout
        )
        if not result.ok:
            raise PullFailed(f"Could not pull {image}", cause=result.describe())
        log.info("image_pulled", image=image.render())
        return image

    async def build(
        self,
        workspace: Path,
        tag: str,
        repository_name: str,
        cache_from: ImageRef | None = None,
    ) -> ImageRef:
        """Build the Dockerfile at the workspace root as ``user/repository_name:tag``."""
        image = self.image_ref(repository_name, tag)
        args = [self._docker, "build", "--tag", image.render()]
        if cache_from is not None:
            args += ["--cache-from", cache_from.render()]
        args.append(str(workspace))

        result = await run_command(args, cwd=workspace, timeout=self._build_timeout)
        if not result.ok:
            raise BuildFailed(f"Build of {image} failed", cause=result.describe())
        log.info("image_built", image=image.render())
        return image

    async def push(self, image: ImageRef) -> None:
        """Publish a previously built image. A single attempt."""
        result = await run_command(
            [self._docker, "push", image.render()], timeout=self._push_timeout
        )
        if not result.ok:
            stale = _is_auth_error(result)
            if stale:
                self.invalidate_auth()
            raise PushFailed(
                f"Push of {image} failed", cause=result.describe(), auth_expired=stale
            )
        log.info("image_pushed", image=image.render())
