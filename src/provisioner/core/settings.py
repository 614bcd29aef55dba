"""Environment-driven settings for the provisioner.

Two settings groups are read from the environment (and an optional
``.env`` file):

- ``ProvisionerSettings`` (``PROVISIONER_*``): what to run and where the
  artifact lives inside the unit, local output, deadlines, logging.
- ``StorageSettings`` (``R2_*``): the S3-compatible bucket artifacts are
  published to. Cloudflare R2 is the default target; any S3 endpoint works
  by setting ``R2_ENDPOINT_URL``.

The docker daemon address and API version are *not* settings here; the
``docker`` CLI resolves them from ``DOCKER_HOST``/``DOCKER_CONTEXT`` itself.

Examples:
    >>> from provisioner.core.settings import ProvisionerSettings
    >>> settings = ProvisionerSettings(file_type="json")
    >>> settings.artifact_path("Beau_Rivage_Palace")
    '/puppeteer/reviews/0_Beau_Rivage_Palace.json'
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_IMAGE = "ghcr.io/algo7/tripadvisor-review-scraper/scrap:latest"


class ProvisionerSettings(BaseSettings):
    """Settings for unit provisioning and artifact retrieval.

    Fields
    ──────
    docker_binary            : docker CLI executable (name on PATH or path)
    image                    : image every unit runs
    scrape_mode / concurrency: injected as SCRAPE_MODE / CONCURRENCY
    workdir / subdir         : where the scraper writes inside the unit
    file_type                : artifact extension (csv | json)
    output_dir               : local directory for extracted artifacts
    job_deadline_seconds     : whole-pipeline deadline, None disables it
    command_timeout_seconds  : ceiling for short docker commands
    label_prefix             : prefix for unit labels and names
    extra_env                : additional KEY=VALUE pairs for every unit
    """

    model_config = SettingsConfigDict(
        env_prefix="PROVISIONER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Backend ──────────────────────────────────────────────────
    docker_binary: str = "docker"
    command_timeout_seconds: float = Field(default=60.0, gt=0)
    label_prefix: str = "provisioner"

    # ── Unit ─────────────────────────────────────────────────────
    image: str = DEFAULT_IMAGE
    scrape_mode: str = "HOTEL"
    concurrency: int = Field(default=1, ge=1)
    extra_env: dict[str, str] = Field(default_factory=dict)

    # ── Artifact ─────────────────────────────────────────────────
    workdir: str = "/puppeteer"
    subdir: str = "reviews"
    file_type: Literal["csv", "json"] = "csv"
    output_dir: Path = Path("exports")

    # ── Deadlines ────────────────────────────────────────────────
    job_deadline_seconds: float | None = Field(default=3600.0, gt=0)

    # ── Logging ──────────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["console", "json"] = "console"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper() if isinstance(value, str) else value

    @field_validator("workdir")
    @classmethod
    def _absolute_workdir(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("workdir must be an absolute path inside the unit")
        return value.rstrip("/") or "/"

    def artifact_path(self, work_name: str) -> str:
        """In-unit path of the artifact for ``work_name``."""
        base = self.workdir.rstrip("/")
        return f"{base}/{self.subdir.strip('/')}/0_{work_name}.{self.file_type}"


class StorageSettings(BaseSettings):
    """S3-compatible storage settings (R2 by default)."""

    model_config = SettingsConfigDict(
        env_prefix="R2_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    account_id: str | None = None
    bucket: str = "reviews"
    access_key_id: str | None = None
    secret_access_key: SecretStr | None = None
    endpoint_url: str | None = None
    region: str = "auto"

    @model_validator(mode="after")
    def _derive_endpoint(self) -> StorageSettings:
        if not self.endpoint_url and self.account_id:
            self.endpoint_url = f"https://{self.account_id}.r2.cloudflarestorage.com"
        return self


@lru_cache(maxsize=1)
def get_settings() -> ProvisionerSettings:
    """Process-wide settings, read once."""
    return ProvisionerSettings()


@lru_cache(maxsize=1)
def get_storage_settings() -> StorageSettings:
    return StorageSettings()
