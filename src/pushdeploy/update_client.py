"""Client for the remote update authority.

One instruction per request: ``POST /deploy`` with
``{"serviceName", "imageName"}``, answered by ``{"accepted", "detail"}``.

Deploys are not idempotent, so a request is retried only when the
connection was never established. Timeouts and mid-flight failures leave
the remote state unknown and are reported as-is.
"""

from __future__ import annotations

import asyncio

import httpx

from pushdeploy.errors import UpdateFailed, UpdateRejected, UpdateTimedOut, UpdateUnreachable
from pushdeploy.logging import get_logger
from pushdeploy.models import Acknowledgement, DeployInstruction

log = get_logger("pushdeploy.update_client")

SECRET_HEADER = "X-Updater-Secret"


class UpdateClient:
    """Shared, concurrency-safe handle to the update authority."""

    def __init__(
        self,
        base_url: str,
        secret: str = "",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._secret = secret
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=None)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def deploy(self, instruction: DeployInstruction, timeout: float) -> Acknowledgement:
        """Ask the update authority to roll *instruction* out.

        Raises ``UpdateTimedOut`` if no answer arrives within *timeout*
        seconds, ``UpdateRejected`` if the authority declines, and
        ``UpdateUnreachable`` if the connection could not be made twice.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        image = instruction.image.render()

        for attempt in (1, 2):
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise UpdateTimedOut(f"No answer for {image} within {timeout}s")
            try:
                response = await asyncio.wait_for(self._send(instruction), timeout=remaining)
            except httpx.ConnectError as exc:
                if attempt == 1:
                    log.warning("update_connect_retry", service=instruction.service_name, error=str(exc))
                    continue
                raise UpdateUnreachable(
                    f"Update authority at {self._base_url} unreachable", cause=str(exc)
                ) from exc
            except (TimeoutError, httpx.TimeoutException) as exc:
                raise UpdateTimedOut(f"No answer for {image} within {timeout}s") from exc
            except httpx.RequestError as exc:
                raise UpdateFailed(f"Deploy request for {image} failed", cause=str(exc)) from exc
            return self._acknowledge(instruction, response)

        raise UpdateUnreachable(f"Update authority at {self._base_url} unreachable")

    async def _send(self, instruction: DeployInstruction) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers[SECRET_HEADER] = self._secret
        return await self._get_client().post(
            f"{self._base_url}/deploy",
            json=instruction.to_payload(),
            headers=headers,
        )

    def _acknowledge(
        self, instruction: DeployInstruction, response: httpx.Response
    ) -> Acknowledgement:
        image = instruction.image.render()
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        ack = Acknowledgement.from_dict(body)

        if response.status_code >= 400:
            raise UpdateRejected(
                f"Update authority returned {response.status_code} for {image}",
                cause=ack.detail or response.text[:200],
            )
        if not ack.accepted:
            raise UpdateRejected(f"Update authority declined {image}", cause=ack.detail)

        log.info(
            "update_accepted",
            service=instruction.service_name,
            image=image,
            detail=ack.detail,
        )
        return ack
