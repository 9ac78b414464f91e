"""Data models shared across the pipeline.

Plain dataclasses with ``to_dict`` for serialisation, in the same shape the
status API returns them.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pushdeploy.errors import InvalidRepository, PipelineError

# Lowercase docker repository component; doubles as a safe path segment.
REPOSITORY_NAME_RE = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*$")
MAX_REPOSITORY_NAME_LENGTH = 128

LATEST_TAG = "latest"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def validate_name(value: str, what: str = "repository name") -> str:
    """Check *value* against the allow-list and return it unchanged."""
    if not value:
        raise InvalidRepository(f"{what} must not be empty")
    if len(value) > MAX_REPOSITORY_NAME_LENGTH:
        raise InvalidRepository(f"{what} is longer than {MAX_REPOSITORY_NAME_LENGTH} characters")
    if not REPOSITORY_NAME_RE.match(value):
        raise InvalidRepository(f"{what} {value!r} contains characters outside [a-z0-9._-]")
    return value


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Credentials:
    """Username/password pair. The password never appears in ``repr``."""

    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class RepositoryRef:
    """The repository a trigger asks us to build."""

    name: str
    source_url: str

    def __post_init__(self) -> None:
        validate_name(self.name)
        if not self.source_url or not self.source_url.strip():
            raise InvalidRepository("source URL must not be empty")

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "source_url": self.source_url}


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageRef:
    """A tagged image in the registry, rendered ``user/name:tag``."""

    registry_user: str
    repository_name: str
    tag: str

    def render(self) -> str:
        return f"{self.registry_user}/{self.repository_name}:{self.tag}"

    def with_tag(self, tag: str) -> ImageRef:
        return ImageRef(self.registry_user, self.repository_name, tag)

    def __str__(self) -> str:
        return self.render()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ImageRef):
            return NotImplemented
        return self.render() == other.render()

    def __hash__(self) -> int:
        return hash(self.render())


@dataclass(frozen=True)
class DeployInstruction:
    """Terminal artifact handed to the update authority."""

    service_name: str
    image: ImageRef

    def to_payload(self) -> dict[str, str]:
        return {"serviceName": self.service_name, "imageName": self.image.render()}


@dataclass(frozen=True)
class Acknowledgement:
    accepted: bool
    detail: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Acknowledgement:
        return cls(accepted=bool(data.get("accepted", False)), detail=str(data.get("detail", "")))


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


class Stage(StrEnum):
    """Pipeline states, in the only order a run may visit them."""

    IDLE = "Idle"
    FETCHING = "Fetching"
    VERSIONING = "Versioning"
    AUTHENTICATING = "Authenticating"
    BUILDING = "Building"
    PUSHING = "Pushing"
    DEPLOYING = "Deploying"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @classmethod
    def ordered(cls) -> tuple[Stage, ...]:
        return (
            cls.IDLE,
            cls.FETCHING,
            cls.VERSIONING,
            cls.AUTHENTICATING,
            cls.BUILDING,
            cls.PUSHING,
            cls.DEPLOYING,
            cls.SUCCEEDED,
        )

    @property
    def terminal(self) -> bool:
        return self in (Stage.SUCCEEDED, Stage.FAILED)


@dataclass
class PipelineRun:
    """Mutable state of one run; discarded when the run terminates."""

    repository: RepositoryRef
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: Stage = Stage.IDLE
    workspace: Path | None = None
    version: int | None = None
    image: ImageRef | None = None
    pushed: bool = False
    completed_stages: list[Stage] = field(default_factory=list)
    started_at: str = field(default_factory=_now_iso)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def advance(self, stage: Stage) -> None:
        """Move forward to *stage*; going backwards or sideways is a bug."""
        order = Stage.ordered()
        if self.state.terminal or stage not in order:
            raise RuntimeError(f"cannot move from {self.state} to {stage}")
        if order.index(stage) <= order.index(self.state):
            raise RuntimeError(f"stage {stage} already visited")
        if self.state is not Stage.IDLE:
            self.completed_stages.append(self.state)
        self.state = stage

    def fail(self) -> Stage:
        """Enter ``Failed`` and return the stage that was active.

        A failure after ``Succeeded`` was reached is attributed to the last
        stage the run completed.
        """
        failed_in = self.state
        if failed_in is Stage.SUCCEEDED and self.completed_stages:
            failed_in = self.completed_stages[-1]
        self.state = Stage.FAILED
        return failed_in

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "repository": self.repository.to_dict(),
            "state": self.state.value,
            "version": self.version,
            "image": self.image.render() if self.image else None,
            "completed_stages": [s.value for s in self.completed_stages],
            "started_at": self.started_at,
            "cancel_requested": self.cancelled,
        }


@dataclass(frozen=True)
class RunOutcome:
    """``Succeeded(image)`` or ``Failed(stage, cause)``.

    A failed outcome still carries the image when it reached the registry,
    so an operator can deploy it by hand.
    """

    repository: RepositoryRef
    succeeded: bool
    run_id: str = ""
    image: ImageRef | None = None
    stage: Stage | None = None
    cause: PipelineError | None = None
    version: int | None = None
    image_pushed: bool = False
    completed_stages: tuple[Stage, ...] = ()
    completed_at: str = field(default_factory=_now_iso)

    @classmethod
    def success(cls, run: PipelineRun) -> RunOutcome:
        return cls(
            repository=run.repository,
            succeeded=True,
            run_id=run.run_id,
            image=run.image,
            version=run.version,
            image_pushed=run.pushed,
            completed_stages=tuple(run.completed_stages),
        )

    @classmethod
    def failure(cls, run: PipelineRun, stage: Stage, cause: PipelineError) -> RunOutcome:
        return cls(
            repository=run.repository,
            succeeded=False,
            run_id=run.run_id,
            image=run.image,
            stage=stage,
            cause=cause,
            version=run.version,
            image_pushed=run.pushed,
            completed_stages=tuple(run.completed_stages),
        )

    @classmethod
    def rejected(cls, repository: RepositoryRef, cause: PipelineError) -> RunOutcome:
        return cls(repository=repository, succeeded=False, stage=Stage.IDLE, cause=cause)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "succeeded" if self.succeeded else "failed",
            "run_id": self.run_id,
            "repository": self.repository.to_dict(),
            "image": self.image.render() if self.image else None,
            "image_pushed": self.image_pushed,
            "version": self.version,
            "stage": self.stage.value if self.stage else None,
            "error": self.cause.to_dict() if self.cause else None,
            "completed_stages": [s.value for s in self.completed_stages],
            "completed_at": self.completed_at,
        }
