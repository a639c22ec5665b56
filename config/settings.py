"""
Central configuration using Pydantic BaseSettings.

Validates all env vars at startup (fail-fast). Values come from the process
environment and an optional .env file; command-line flags in lab_server.py
override them.

Usage:
    from config.settings import get_settings

    settings = get_settings()
    print(settings.jobs.data_dir)
    print(settings.ovh.application_secret.get_secret_value())

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

from functools import lru_cache
from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings


# =============================================================================
# Nested Settings Groups
# =============================================================================


class JobSettings(BaseSettings):
    """Job storage and execution configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    work_dir: Path = Path("/tmp/easylab-jobs")
    data_dir: Path = Path("/tmp/easylab-data")

    # What to do with jobs found pending/running at startup
    interrupted_job_policy: Literal["leave", "fail"] = "leave"

    # SIGTERM -> SIGKILL window for live programs on shutdown
    shutdown_grace_seconds: float = 30.0

    @field_validator("interrupted_job_policy", mode="before")
    @classmethod
    def _normalize_policy(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class PulumiSettings(BaseSettings):
    """Pulumi CLI and project configuration."""

    model_config = {"env_prefix": "PULUMI_", "extra": "ignore"}

    binary: str = "pulumi"
    project_name: str = "lab-as-code"
    runtime: str = "go"
    description: str = "Lab as Code - Kubernetes and Coder on OVHcloud"
    program_dir: Optional[str] = None  # Copied into each workspace when set


class OVHSettings(BaseSettings):
    """OVHcloud API credentials."""

    model_config = {"env_prefix": "OVH_", "extra": "ignore"}

    application_key: SecretStr = SecretStr("")
    application_secret: SecretStr = SecretStr("")
    consumer_key: SecretStr = SecretStr("")
    service_name: str = ""
    endpoint: str = ""

    @property
    def is_configured(self) -> bool:
        return all([
            self.application_key.get_secret_value(),
            self.application_secret.get_secret_value(),
            self.consumer_key.get_secret_value(),
            self.service_name,
            self.endpoint,
        ])

    def environment(self) -> Dict[str, str]:
        """Credentials as the environment variables the program expects."""
        return {
            "OVH_APPLICATION_KEY": self.application_key.get_secret_value(),
            "OVH_APPLICATION_SECRET": self.application_secret.get_secret_value(),
            "OVH_CONSUMER_KEY": self.consumer_key.get_secret_value(),
            "OVH_SERVICE_NAME": self.service_name,
            "OVH_ENDPOINT": self.endpoint,
        }


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {"env_prefix": "", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""

    # Server
    host: str = "0.0.0.0"
    port: int = 8080
    shutdown_timeout: int = 30

    # Nested groups (initialized separately to support env_prefix)
    jobs: JobSettings = None  # type: ignore[assignment]
    pulumi: PulumiSettings = None  # type: ignore[assignment]
    ovh: OVHSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("jobs") is None:
            values["jobs"] = JobSettings()
        if values.get("pulumi") is None:
            values["pulumi"] = PulumiSettings()
        if values.get("ovh") is None:
            values["ovh"] = OVHSettings()
        return values

    @model_validator(mode="after")
    def _validate_port(self):
        if not 0 < self.port < 65536:
            raise ValueError(f"PORT must be between 1 and 65535, got {self.port}")
        return self


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return AppSettings()
