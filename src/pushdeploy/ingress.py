"""HTTP trigger ingress: GitHub push webhooks in, pipeline runs out.

Endpoints:
    GET  /health                 liveness, no auth
    POST /webhook                GitHub push event (HMAC-verified when a secret is set)
    GET  /runs                   active, pending and recent runs
    POST /runs/{name}/cancel     stop the active run between stages
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import TYPE_CHECKING, Any

from aiohttp import web

from pushdeploy import __version__
from pushdeploy.errors import InvalidRepository
from pushdeploy.logging import get_logger
from pushdeploy.models import RepositoryRef
from pushdeploy.source import is_trusted_source

if TYPE_CHECKING:
    from pushdeploy.orchestrator import PipelineOrchestrator

log = get_logger("pushdeploy.ingress")

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
ADMIN_HEADER = "X-Admin-Secret"

_ORCHESTRATOR_KEY = web.AppKey("orchestrator", object)
_WEBHOOK_SECRET_KEY = web.AppKey("webhook_secret", str)
_ADMIN_SECRET_KEY = web.AppKey("admin_secret", str)
_SOURCE_HOST_KEY = web.AppKey("source_host", str)
_START_TIME_KEY = web.AppKey("start_time", float)


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Check a GitHub ``sha256=<hex>`` signature over the raw body."""
    if not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.removeprefix("sha256="))


def repository_from_event(payload: Any, source_host: str = "") -> RepositoryRef:
    """Decode a push event into a ``RepositoryRef``.

    Prefers ``clone_url`` and falls back to ``html_url``. When *source_host*
    is set, URLs anywhere else are refused.
    """
    if not isinstance(payload, dict):
        raise InvalidRepository("event body must be a JSON object")
    repository = payload.get("repository")
    if not isinstance(repository, dict):
        raise InvalidRepository("event has no repository")
    name = repository.get("name")
    url = repository.get("clone_url") or repository.get("html_url")
    if not isinstance(name, str) or not isinstance(url, str):
        raise InvalidRepository("repository name and URL are required")
    if source_host and not is_trusted_source(url, source_host):
        raise InvalidRepository(f"source URL is not on {source_host}")
    return RepositoryRef(name=name, source_url=url)


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _admin_ok(request: web.Request) -> bool:
    secret = request.app[_ADMIN_SECRET_KEY]
    if not secret:
        return True
    return hmac.compare_digest(request.headers.get(ADMIN_HEADER, ""), secret)


def _orchestrator(request: web.Request) -> PipelineOrchestrator:
    return request.app[_ORCHESTRATOR_KEY]  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response(
        {
            "status": "ok",
            "version": __version__,
            "uptime_seconds": round(time.monotonic() - request.app[_START_TIME_KEY], 1),
        }
    )


async def handle_webhook(request: web.Request) -> web.Response:
    body = await request.read()

    secret = request.app[_WEBHOOK_SECRET_KEY]
    if secret and not verify_signature(secret, body, request.headers.get(SIGNATURE_HEADER, "")):
        log.warning("webhook_bad_signature", remote=request.remote)
        return _error("Invalid signature", 401)

    event = request.headers.get(EVENT_HEADER, "push")
    if event == "ping":
        return web.json_response({"status": "pong"})
    if event != "push":
        return web.json_response({"status": "ignored", "event": event}, status=202)

    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return _error("Invalid JSON body", 400)

    try:
        repository = repository_from_event(payload, request.app[_SOURCE_HOST_KEY])
    except InvalidRepository as exc:
        log.warning("webhook_invalid_repository", error=exc.message)
        return _error(exc.message, 400)

    ticket = _orchestrator(request).submit(repository)
    if not ticket.accepted:
        cause = ticket.outcome.result().cause
        return web.json_response(
            {"status": ticket.disposition.value, "error": cause.message if cause else "Rejected"},
            status=409,
        )
    return web.json_response(
        {"status": ticket.disposition.value, "repository": repository.name},
        status=202,
    )


async def handle_runs(request: web.Request) -> web.Response:
    if not _admin_ok(request):
        return _error("Unauthorized", 401)
    return web.json_response(_orchestrator(request).status_snapshot())


async def handle_cancel(request: web.Request) -> web.Response:
    if not _admin_ok(request):
        return _error("Unauthorized", 401)
    name = request.match_info["name"]
    if not _orchestrator(request).cancel(name):
        return _error(f"No active run for {name}", 404)
    return web.json_response({"status": "cancel_requested", "repository": name})


def create_app(
    orchestrator: PipelineOrchestrator,
    webhook_secret: str = "",
    admin_secret: str = "",
    source_host: str = "github.com",
) -> web.Application:
    """Build the ingress application around *orchestrator*.

    Pushes are accepted only for repositories on *source_host*; an empty
    value accepts any URL.
    """
    app = web.Application()
    app[_ORCHESTRATOR_KEY] = orchestrator
    app[_WEBHOOK_SECRET_KEY] = webhook_secret
    app[_ADMIN_SECRET_KEY] = admin_secret
    app[_SOURCE_HOST_KEY] = source_host
    app[_START_TIME_KEY] = time.monotonic()

    app.router.add_get("/health", handle_health)
    app.router.add_post("/webhook", handle_webhook)
    app.router.add_get("/runs", handle_runs)
    app.router.add_post("/runs/{name}/cancel", handle_cancel)
    return app
