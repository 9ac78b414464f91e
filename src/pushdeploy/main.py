"""Main entry point for pushdeploy."""

from __future__ import annotations

import asyncio
import sys

from aiohttp import web

from pushdeploy.config import Settings, load_settings
from pushdeploy.errors import ConfigMissing
from pushdeploy.ingress import create_app
from pushdeploy.logging import get_logger, setup_logging
from pushdeploy.orchestrator import PipelineOrchestrator
from pushdeploy.workspace import WorkspaceManager


async def serve(settings: Settings) -> None:
    """Serve the trigger ingress until cancelled."""
    log = get_logger("pushdeploy.main")
    config = settings.pipeline_config()

    # Nothing is running yet, so anything under the root is left over.
    workspaces = WorkspaceManager(config.workspace_root)
    workspaces.sweep()

    orchestrator = PipelineOrchestrator(config, workspaces=workspaces)
    app = create_app(
        orchestrator,
        webhook_secret=(
            settings.webhook_secret.get_secret_value() if settings.webhook_secret else ""
        ),
        admin_secret=settings.admin_secret.get_secret_value() if settings.admin_secret else "",
        source_host=config.source_host,
    )
    if not settings.webhook_secret:
        log.warning("webhook_unsigned", detail="PUSHDEPLOY_WEBHOOK_SECRET is not set")

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, settings.host, settings.port)
    await site.start()
    log.info(
        "pushdeploy_started",
        host=settings.host,
        port=settings.port,
        environment=settings.environment,
        workspace_root=str(config.workspace_root),
        trigger_policy=config.trigger_policy.value,
    )

    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        await orchestrator.shutdown()
        log.info("pushdeploy_stopped")


def run() -> None:
    """Run the application."""
    try:
        settings = load_settings()
    except ConfigMissing as exc:
        setup_logging()
        get_logger("pushdeploy.main").error("config_missing", fields=exc.fields)
        sys.exit(1)

    setup_logging(settings)
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        get_logger("pushdeploy.main").info("shutdown_requested")


if __name__ == "__main__":
    run()
