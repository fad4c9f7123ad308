"""Pipeline settings — env-driven, read once at process start.

Centralized configuration using pydantic-settings.  Reads from a .env file
and HARBORLINE_* environment variables.  The CLI builds one
``PipelineSettings`` value and threads it into the Orchestrator; there is
no module-level instance, so independent orchestrators can run side by
side with different settings.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from harborline.models.targets import Environment, TargetSpec


def _default_targets() -> list[TargetSpec]:
    return [
        TargetSpec(
            name="dev-target",
            environment=Environment.DEVELOPMENT,
            health_endpoint="http://dev.internal:8080/health",
        ),
        TargetSpec(
            name="prod-target",
            environment=Environment.PRODUCTION,
            health_endpoint="http://prod.internal:8080/health",
        ),
    ]


def _default_branch_targets() -> dict[str, list[str]]:
    return {"development": ["dev-target"], "master": ["prod-target"]}


class PipelineSettings(BaseSettings):
    """Pipeline configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export HARBORLINE_REGISTRY_URL=https://registry.example.com
        export HARBORLINE_REGISTRY_REPOSITORY=team/api
        export HARBORLINE_HEALTH_TIMEOUT_SECONDS=90
        export HARBORLINE_BRANCH_TARGETS='{"development": ["dev-target"]}'

    Complex fields (``targets``, ``branch_targets``) are parsed as JSON.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="HARBORLINE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    state_db_path: Path = Path(".harborline/state.db")
    artifact_store_path: Path = Path(".harborline/artifacts")

    # Build
    source_repo_path: Path = Path(".")
    build_command: str = "docker build --quiet {context}"
    build_timeout_seconds: int = 1800
    build_retries: int = Field(default=1, ge=0)

    # Registry
    registry_url: str = ""
    registry_repository: str = "app"
    registry_username: str = ""
    registry_password: SecretStr = SecretStr("")
    registry_timeout_seconds: float = 30.0
    publish_retries: int = Field(default=3, ge=1)

    # Compute layer
    compute_replace_command: str = ""
    compute_digest_command: str = ""
    compute_token: SecretStr = SecretStr("")

    # Branch -> target mapping
    targets: list[TargetSpec] = Field(default_factory=_default_targets)
    branch_targets: dict[str, list[str]] = Field(
        default_factory=_default_branch_targets
    )

    # Rollout health gate
    health_timeout_seconds: float = 60.0
    health_max_attempts: int = Field(default=10, ge=1)
    health_initial_backoff_seconds: float = 1.0
    health_max_backoff_seconds: float = 15.0
    health_request_timeout_seconds: float = 5.0
    max_parallel_rollouts: int = Field(default=4, ge=1)

    # Branch and target claims shared across CI jobs
    claim_ttl_seconds: float = Field(default=3600.0, gt=0)
    claim_poll_seconds: float = Field(default=2.0, gt=0)

    # Passed through unchanged to the deployed application
    app_port: int = 8080

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"

    @property
    def runtime_env(self) -> dict[str, str]:
        """Runtime configuration handed to the deployed artifact."""
        return {"PORT": str(self.app_port)}
