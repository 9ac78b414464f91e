"""Configuration management for pushdeploy.

``Settings`` reads the environment (prefix ``PUSHDEPLOY_``) and an optional
``.env`` file. Components never read settings directly: the entry point
turns them into an immutable ``PipelineConfig`` and passes that in.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_core import PydanticCustomError
from pydantic_settings import BaseSettings, SettingsConfigDict

from pushdeploy.errors import ConfigMissing
from pushdeploy.models import Credentials, validate_name

ENV_PREFIX = "PUSHDEPLOY_"


class TriggerPolicy(StrEnum):
    """What to do with a trigger for a repository that is already building."""

    QUEUE = "queue"  # keep one pending trigger, coalesce the rest
    REJECT = "reject"  # fail immediately with RunInProgress


@dataclass(frozen=True)
class StageTimeouts:
    """Per-stage deadlines in seconds."""

    fetch: float = 300
    version: float = 30
    login: float = 60
    pull: float = 600
    build: float = 1800
    push: float = 900
    deploy: float = 60


@dataclass(frozen=True)
class PipelineConfig:
    """Everything the orchestrator needs, fixed before the first run."""

    registry: Credentials
    source: Credentials
    update_authority_url: str
    workspace_root: Path
    registry_server: str = ""
    source_host: str = "github.com"
    update_authority_secret: str = ""
    timeouts: StageTimeouts = StageTimeouts()
    push_attempts: int = 3
    push_backoff_seconds: float = 2.0
    auth_cache_ttl_seconds: float = 3600
    trigger_policy: TriggerPolicy = TriggerPolicy.QUEUE
    max_concurrent_runs: int = 4
    history_limit: int = 50

    @property
    def registry_user(self) -> str:
        return self.registry.username


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Registry
    registry_username: str = Field(description="Registry account; also the image namespace")
    registry_password: SecretStr = Field(description="Registry password or access token")
    registry_server: str = Field(default="", description="Registry host; empty for Docker Hub")

    # Source control
    source_username: str = Field(description="Source-control user for cloning")
    source_password: SecretStr = Field(description="Source-control password or token")
    source_host: str = Field(
        default="github.com",
        description="Only host that receives the source credentials and may be cloned from",
    )

    # Update authority
    update_authority_url: str = Field(description="Base URL of the update service")
    update_authority_secret: SecretStr | None = Field(
        default=None, description="Shared secret sent as X-Updater-Secret"
    )

    # Pipeline
    workspace_root: Path = Field(default=Path("data/workspaces"))
    fetch_timeout_seconds: float = Field(default=300, gt=0)
    version_timeout_seconds: float = Field(default=30, gt=0)
    login_timeout_seconds: float = Field(default=60, gt=0)
    pull_timeout_seconds: float = Field(default=600, gt=0)
    build_timeout_seconds: float = Field(default=1800, gt=0)
    push_timeout_seconds: float = Field(default=900, gt=0)
    deploy_timeout_seconds: float = Field(default=60, gt=0)
    push_attempts: int = Field(default=3, ge=1, le=10)
    push_backoff_seconds: float = Field(default=2.0, ge=0)
    auth_cache_ttl_seconds: float = Field(default=3600, ge=0)
    trigger_policy: TriggerPolicy = Field(default=TriggerPolicy.QUEUE)
    max_concurrent_runs: int = Field(default=4, ge=1)
    history_limit: int = Field(default=50, ge=1)

    # Ingress
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    webhook_secret: SecretStr | None = Field(
        default=None, description="GitHub webhook secret for X-Hub-Signature-256"
    )
    admin_secret: SecretStr | None = Field(
        default=None, description="Secret required by the run status/cancel endpoints"
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator(
        "registry_username",
        "registry_password",
        "source_username",
        "source_password",
        "update_authority_url",
        mode="before",
    )
    @classmethod
    def _blank_is_missing(cls, value: object) -> object:
        raw = value.get_secret_value() if isinstance(value, SecretStr) else value
        if isinstance(raw, str) and not raw.strip():
            raise PydanticCustomError("missing", "Field required")
        return value

    @field_validator("registry_username")
    @classmethod
    def _registry_username_is_image_safe(cls, value: str) -> str:
        return validate_name(value, "registry username")

    @field_validator("update_authority_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    def pipeline_config(self) -> PipelineConfig:
        """Freeze the pipeline-relevant settings."""
        return PipelineConfig(
            registry=Credentials(
                self.registry_username, self.registry_password.get_secret_value()
            ),
            source=Credentials(self.source_username, self.source_password.get_secret_value()),
            update_authority_url=self.update_authority_url,
            update_authority_secret=(
                self.update_authority_secret.get_secret_value()
                if self.update_authority_secret
                else ""
            ),
            workspace_root=self.workspace_root,
            registry_server=self.registry_server,
            source_host=self.source_host.strip().lower(),
            timeouts=StageTimeouts(
                fetch=self.fetch_timeout_seconds,
                version=self.version_timeout_seconds,
                login=self.login_timeout_seconds,
                pull=self.pull_timeout_seconds,
                build=self.build_timeout_seconds,
                push=self.push_timeout_seconds,
                deploy=self.deploy_timeout_seconds,
            ),
            push_attempts=self.push_attempts,
            push_backoff_seconds=self.push_backoff_seconds,
            auth_cache_ttl_seconds=self.auth_cache_ttl_seconds,
            trigger_policy=self.trigger_policy,
            max_concurrent_runs=self.max_concurrent_runs,
            history_limit=self.history_limit,
        )


def load_settings(**overrides: object) -> Settings:
    """Build ``Settings``, reporting absent or blank required values as ``ConfigMissing``.

    Other validation problems (bad types, out-of-range numbers) still raise
    pydantic's ``ValidationError``.
    """
    try:
        return Settings(**overrides)  # type: ignore[arg-type]
    except ValidationError as exc:
        missing = [
            f"{ENV_PREFIX}{str(err['loc'][0]).upper()}"
            for err in exc.errors()
            if err["type"] == "missing" and err["loc"]
        ]
        if missing:
            raise ConfigMissing(missing) from exc
        raise

