"""Pipeline orchestrator: one run per trigger, one run per repository at a time.

Lifecycle of a run:
1. Fetch the repository into a fresh workspace
2. Resolve the version number from first-parent history
3. Log in to the registry (cached across runs)
4. Warm the build cache from ``:latest`` (best effort), then build
5. Push the image, retrying transient registry failures
6. Hand a deploy instruction to the update authority

Any failure ends the run in ``Failed`` with the stage it happened in. The
workspace is removed on every exit path. Nothing already pushed or
deployed is undone.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from pushdeploy.config import PipelineConfig, TriggerPolicy
from pushdeploy.errors import (
    PipelineError,
    PullFailed,
    PushFailed,
    RunCancelled,
    RunInProgress,
    UnexpectedError,
)
from pushdeploy.images import ImageBuilder
from pushdeploy.logging import get_logger
from pushdeploy.models import DeployInstruction, ImageRef, PipelineRun, RepositoryRef, RunOutcome, Stage
from pushdeploy.source import GitSource
from pushdeploy.update_client import UpdateClient
from pushdeploy.utils import timed_operation
from pushdeploy.version import VersionResolver
from pushdeploy.workspace import WorkspaceManager

log = get_logger("pushdeploy.orchestrator")


class Disposition(StrEnum):
    """What ``submit`` did with a trigger."""

    STARTED = "started"
    QUEUED = "queued"
    COALESCED = "coalesced"
    REJECTED = "rejected"


@dataclass
class RunTicket:
    """Handle returned by ``submit``; await ``outcome`` for the result."""

    repository: RepositoryRef
    disposition: Disposition
    outcome: asyncio.Future[RunOutcome]

    async def wait(self) -> RunOutcome:
        return await self.outcome

    @property
    def accepted(self) -> bool:
        return self.disposition is not Disposition.REJECTED


@dataclass
class _RepositorySlot:
    """In-flight bookkeeping for one repository name."""

    active: PipelineRun | None = None
    pending: RepositoryRef | None = None
    pending_outcome: asyncio.Future[RunOutcome] | None = None


class PipelineOrchestrator:
    """Runs the build-and-deploy pipeline for incoming triggers.

    Runs for different repositories proceed in parallel, up to
    ``max_concurrent_runs``. Runs for the same repository never overlap:
    depending on ``trigger_policy`` a second trigger either waits (at most
    one waiting trigger, later ones merge into it) or is rejected.
    """

    def __init__(
        self,
        config: PipelineConfig,
        fetcher: GitSource | None = None,
        resolver: VersionResolver | None = None,
        builder: ImageBuilder | None = None,
        update_client: UpdateClient | None = None,
        workspaces: WorkspaceManager | None = None,
    ) -> None:
        timeouts = config.timeouts
        self._config = config
        self._fetcher = fetcher or GitSource(timeout=timeouts.fetch, source_host=config.source_host)
        self._resolver = resolver or VersionResolver(timeout=timeouts.version)
        self._builder = builder or ImageBuilder(
            config.registry_user,
            registry_server=config.registry_server,
            auth_ttl_seconds=config.auth_cache_ttl_seconds,
            login_timeout=timeouts.login,
            pull_timeout=timeouts.pull,
            build_timeout=timeouts.build,
            push_timeout=timeouts.push,
        )
        self._update_client = update_client or UpdateClient(
            config.update_authority_url, secret=config.update_authority_secret
        )
        self._workspaces = workspaces or WorkspaceManager(config.workspace_root)
        self._slots: dict[str, _RepositorySlot] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._history: deque[RunOutcome] = deque(maxlen=config.history_limit)
        self._semaphore = asyncio.Semaphore(config.max_concurrent_runs)
        self._closed = False

    @property
    def config(self) -> PipelineConfig:
        return self._config

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, repository: RepositoryRef) -> RunOutcome:
        """Run the pipeline for *repository* and return its outcome."""
        return await self.submit(repository).wait()

    def submit(self, repository: RepositoryRef) -> RunTicket:
        """Schedule a run for *repository* without waiting for it."""
        loop = asyncio.get_running_loop()
        slot = self._slots.get(repository.name)

        if self._closed:
            return self._rejected(repository, RunCancelled("Orchestrator is shutting down"))

        if slot is None:
            outcome: asyncio.Future[RunOutcome] = loop.create_future()
            self._slots[repository.name] = _RepositorySlot()
            task = loop.create_task(
                self._drive(repository, outcome), name=f"pipeline:{repository.name}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            log.info("pipeline_trigger_started", repository=repository.name)
            return RunTicket(repository, Disposition.STARTED, outcome)

        if self._config.trigger_policy is TriggerPolicy.REJECT:
            return self._rejected(
                repository, RunInProgress(f"A run for {repository.name} is already in progress")
            )

        disposition = Disposition.QUEUED
        if slot.pending_outcome is None:
            slot.pending_outcome = loop.create_future()
        else:
            disposition = Disposition.COALESCED
        slot.pending = repository
        log.info("pipeline_trigger_queued", repository=repository.name, disposition=disposition.value)
        return RunTicket(repository, disposition, slot.pending_outcome)

    def _rejected(self, repository: RepositoryRef, cause: PipelineError) -> RunTicket:
        outcome: asyncio.Future[RunOutcome] = asyncio.get_running_loop().create_future()
        outcome.set_result(RunOutcome.rejected(repository, cause))
        log.info("pipeline_trigger_rejected", repository=repository.name, error=cause.code)
        return RunTicket(repository, Disposition.REJECTED, outcome)

    def cancel(self, repository_name: str) -> bool:
        """Signal the active run for *repository_name* to stop between stages.

        A trigger waiting behind it still runs afterwards.
        """
        slot = self._slots.get(repository_name)
        if slot is None or slot.active is None or slot.active.state.terminal:
            return False
        slot.active.cancel_event.set()
        log.info("pipeline_cancel_requested", repository=repository_name, run_id=slot.active.run_id)
        return True

    # ------------------------------------------------------------------
    # Status surface
    # ------------------------------------------------------------------

    def is_active(self, repository_name: str) -> bool:
        return repository_name in self._slots

    def active_runs(self) -> list[dict[str, Any]]:
        return [slot.active.to_dict() for slot in self._slots.values() if slot.active is not None]

    def pending(self) -> list[dict[str, str]]:
        return [slot.pending.to_dict() for slot in self._slots.values() if slot.pending is not None]

    def history(self) -> list[dict[str, Any]]:
        """Most recent outcomes, newest first."""
        return [outcome.to_dict() for outcome in reversed(self._history)]

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "active": self.active_runs(),
            "pending": self.pending(),
            "recent": self.history(),
            "trigger_policy": self._config.trigger_policy.value,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait until no run is active or pending."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop accepting work, cancel runs between stages, and close clients."""
        self._closed = True
        for name, slot in self._slots.items():
            if slot.pending is not None and slot.pending_outcome is not None:
                if not slot.pending_outcome.done():
                    slot.pending_outcome.set_result(
                        RunOutcome.rejected(slot.pending, RunCancelled("Shutting down"))
                    )
                slot.pending = None
                slot.pending_outcome = None
            self.cancel(name)
        await self.wait_idle()
        await self._update_client.close()
        log.info("pipeline_orchestrator_stopped")

    # ------------------------------------------------------------------
    # Run driver
    # ------------------------------------------------------------------

    async def _drive(self, repository: RepositoryRef, outcome: asyncio.Future[RunOutcome]) -> None:
        """Run *repository*, then whatever trigger queued up behind it."""
        slot = self._slots[repository.name]
        current: RepositoryRef | None = repository
        future: asyncio.Future[RunOutcome] | None = outcome
        try:
            while current is not None and future is not None:
                run = PipelineRun(repository=current)
                slot.active = run
                result: RunOutcome | None = None
                try:
                    result = await self._execute(run)
                    self._history.append(result)
                except Exception as exc:
                    log.exception(
                        "pipeline_run_bookkeeping_failed",
                        repository=current.name,
                        run_id=run.run_id,
                    )
                    if result is None:
                        result = self._failed(
                            run,
                            UnexpectedError(str(exc) or type(exc).__name__, cause=type(exc).__name__),
                        )
                finally:
                    slot.active = None
                if not future.done():
                    future.set_result(result)
                current, future = slot.pending, slot.pending_outcome
                slot.pending, slot.pending_outcome = None, None
        except asyncio.CancelledError:
            for waiting in (future, slot.pending_outcome):
                if waiting is not None and not waiting.done():
                    waiting.cancel()
            raise
        finally:
            self._slots.pop(repository.name, None)

    async def _execute(self, run: PipelineRun) -> RunOutcome:
        """Drive one run to a terminal state. Never raises ``PipelineError``."""
        async with self._semaphore:
            with structlog.contextvars.bound_contextvars(
                run_id=run.run_id, repository=run.repository.name
            ):
                log.info("pipeline_run_started", source_url=run.repository.source_url)
                try:
                    await self._pipeline(run)
                    run.advance(Stage.SUCCEEDED)
                    outcome = RunOutcome.success(run)
                    log.info(
                        "pipeline_run_succeeded",
                        image=run.image.render() if run.image else None,
                        version=run.version,
                    )
                    return outcome
                except RunCancelled as exc:
                    skipped = Stage(exc.skipped_stage) if exc.skipped_stage else None
                    return self._failed(run, exc, skipped=skipped)
                except PipelineError as exc:
                    return self._failed(run, exc)
                except Exception as exc:
                    log.exception("pipeline_run_unexpected_error", stage=run.state.value)
                    return self._failed(
                        run, UnexpectedError(str(exc) or type(exc).__name__, cause=type(exc).__name__)
                    )

    async def _pipeline(self, run: PipelineRun) -> None:
        config = self._config
        repository = run.repository

        self._enter(run, Stage.FETCHING)
        async with self._workspaces.checkout(repository.name, run.run_id) as workspace:
            run.workspace = workspace
            async with timed_operation("pipeline_stage_finished", log=log, stage=Stage.FETCHING.value):
                await self._fetcher.fetch(repository.source_url, config.source, workspace)

            async with self._stage(run, Stage.VERSIONING):
                run.version = await self._resolver.resolve(workspace)

            async with self._stage(run, Stage.AUTHENTICATING):
                await self._builder.authenticate(config.registry)

            async with self._stage(run, Stage.BUILDING):
                cache = await self._warm_cache(repository.name)
                run.image = await self._builder.build(
                    workspace,
                    str(run.version),
                    repository_name=repository.name,
                    cache_from=cache,
                )

            async with self._stage(run, Stage.PUSHING):
                await self._push(run.image)
                run.pushed = True

            async with self._stage(run, Stage.DEPLOYING):
                instruction = DeployInstruction(service_name=repository.name, image=run.image)
                await self._update_client.deploy(instruction, timeout=config.timeouts.deploy)

    # ------------------------------------------------------------------
    # Stage helpers
    # ------------------------------------------------------------------

    def _enter(self, run: PipelineRun, stage: Stage) -> None:
        if run.cancelled:
            raise RunCancelled(f"Cancelled before {stage.value}", skipped_stage=stage.value)
        run.advance(stage)
        log.info("pipeline_stage_started", stage=stage.value)

    @asynccontextmanager
    async def _stage(self, run: PipelineRun, stage: Stage) -> AsyncIterator[None]:
        self._enter(run, stage)
        async with timed_operation("pipeline_stage_finished", log=log, stage=stage.value):
            yield

    async def _warm_cache(self, repository_name: str) -> ImageRef | None:
        try:
            return await self._builder.pull_latest(repository_name)
        except PullFailed as exc:
            log.warning("pipeline_cache_warm_skipped", error=exc.message, cause=exc.cause)
            return None

    async def _push(self, image: ImageRef) -> None:
        """Push with bounded retries; the built image is reused every attempt."""
        attempts = self._config.push_attempts
        for attempt in range(1, attempts + 1):
            try:
                await self._builder.push(image)
                return
            except PushFailed as exc:
                if attempt >= attempts:
                    raise
                delay = self._config.push_backoff_seconds * 2 ** (attempt - 1)
                log.warning(
                    "pipeline_push_retry",
                    attempt=attempt,
                    max_attempts=attempts,
                    delay=delay,
                    cause=exc.cause,
                )
                await asyncio.sleep(delay)
                if exc.auth_expired:
                    await self._builder.authenticate(self._config.registry)

    def _failed(
        self, run: PipelineRun, cause: PipelineError, skipped: Stage | None = None
    ) -> RunOutcome:
        failed_in = run.fail()
        stage = skipped or failed_in
        outcome = RunOutcome.failure(run, stage, cause)
        log.warning(
            "pipeline_run_failed",
            stage=stage.value,
            error=cause.code,
            message=cause.message,
            cause=cause.cause,
        )
        if run.pushed and run.image is not None:
            log.warning("pipeline_image_not_deployed", image=run.image.render())
        return outcome
