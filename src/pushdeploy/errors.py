"""Typed errors raised by pipeline components.

Every failure a run can end with is a ``PipelineError`` subclass carrying a
stable ``code`` so outcomes can be serialised and compared without string
matching on messages.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    code = "pipeline_error"

    def __init__(self, message: str = "", *, cause: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.cause = cause

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message, "cause": self.cause}


class ConfigMissing(PipelineError):
    """Required configuration values are absent."""

    code = "config_missing"

    def __init__(self, fields: list[str]) -> None:
        self.fields = list(fields)
        super().__init__(f"Missing required configuration: {', '.join(self.fields)}")


class InvalidRepository(PipelineError, ValueError):
    """A trigger named a repository that cannot be used safely."""

    code = "invalid_repository"


class FetchFailed(PipelineError):
    code = "fetch_failed"


class HistoryUnavailable(PipelineError):
    code = "history_unavailable"


class AuthFailed(PipelineError):
    code = "auth_failed"


class PullFailed(PipelineError):
    """Warm-cache pull failed. Never fatal to a run."""

    code = "pull_failed"


class BuildFailed(PipelineError):
    code = "build_failed"


class PushFailed(PipelineError):
    code = "push_failed"

    def __init__(self, message: str = "", *, cause: str = "", auth_expired: bool = False) -> None:
        super().__init__(message, cause=cause)
        self.auth_expired = auth_expired


class UpdateFailed(PipelineError):
    """The update authority call failed without a usable acknowledgement."""

    code = "update_failed"


class UpdateTimedOut(UpdateFailed):
    code = "update_timed_out"


class UpdateRejected(UpdateFailed):
    code = "update_rejected"


class UpdateUnreachable(UpdateFailed):
    code = "update_unreachable"


class RunInProgress(PipelineError):
    code = "run_in_progress"


class RunCancelled(PipelineError):
    """The run was signalled to stop; ``skipped_stage`` is the stage it did not enter."""

    code = "run_cancelled"

    def __init__(self, message: str = "", *, cause: str = "", skipped_stage: str = "") -> None:
        super().__init__(message, cause=cause)
        self.skipped_stage = skipped_stage


class UnexpectedError(PipelineError):
    code = "unexpected_error"
