"""
Pipeline configuration, read from environment variables (and `.env`).
Defaults target a local development stack of ledger node, key servers and blob store.
"""

import json
import warnings
from functools import lru_cache
from typing import Literal, Self

from pydantic import Field, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Pipeline settings loaded from environment variables.

    The three external collaborators (ledger node, key-server pool, blob
    store) are configured independently so each can be swapped per
    environment.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Core Application Settings
    # ==========================================================================
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = Field(default=False)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    api_v1_prefix: str = "/api/v1"
    project_name: str = "HealthVault"
    version: str = "0.1.0"

    # ==========================================================================
    # Ledger Configuration
    # ==========================================================================
    ledger_rpc_url: str = Field(default="http://localhost:9000")
    ledger_package_id: str = Field(
        default="",
        description="Address of the deployed health-record contract; embedded into policies",
    )
    ledger_request_timeout: float = Field(default=10.0, gt=0)
    ledger_registration_max_attempts: int = Field(default=3, ge=1, le=20)
    ledger_retry_backoff_seconds: float = Field(default=0.05, ge=0)

    # ==========================================================================
    # Key Server Pool Configuration
    # ==========================================================================
    key_server_urls: str | None = Field(
        default=None,
        description=(
            "Key server base URLs (n in a t-of-n scheme). "
            "Supports comma-separated values or a JSON array string."
        ),
    )
    key_server_threshold: int = Field(default=2, ge=1)
    key_server_timeout: float = Field(default=5.0, gt=0)
    encryption_compliance_tags: list[str] = Field(default=["GDPR", "KVKK", "HIPAA"])

    # ==========================================================================
    # Blob Store Configuration
    # ==========================================================================
    blob_publisher_url: str = Field(default="http://localhost:31415")
    blob_aggregator_url: str = Field(default="http://localhost:31416")
    blob_max_bytes: int = Field(default=10 * 1024 * 1024, ge=1, description="10 MiB")
    blob_storage_epochs: int = Field(default=100, ge=1)
    blob_request_timeout: float = Field(default=30.0, gt=0)

    # ==========================================================================
    # Access Control Configuration
    # ==========================================================================
    access_request_ttl_days: int = Field(default=7, ge=1)
    permission_ttl_days: int = Field(default=7, ge=1)
    access_proof_ttl_seconds: int = Field(default=300, ge=1)

    # ==========================================================================
    # Pipeline / Audit Configuration
    # ==========================================================================
    stage_timeout_seconds: float = Field(default=60.0, gt=0)
    audit_default_limit: int = Field(default=100, ge=1)
    audit_summary_limit: int = Field(default=1000, ge=1)
    audit_report_limit: int = Field(default=10000, ge=1)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def key_server_url_list(self) -> list[str]:
        """Parsed key server URLs, in configuration order."""
        return self._parse_key_server_urls()

    def _parse_key_server_urls(self) -> list[str]:
        raw = self.key_server_urls
        if raw is None:
            return []
        raw = raw.strip()
        if not raw:
            return []
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        return [item.strip() for item in raw.split(",") if item.strip()]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def key_server_count(self) -> int:
        """Number of configured key servers (``n`` in a t-of-n scheme)."""
        return len(self.key_server_url_list)

    # ==========================================================================
    # Production Safety Checks
    # ==========================================================================

    @model_validator(mode="after")
    def _validate_production_settings(self) -> Self:
        """Enforce collaborator wiring in production/staging."""
        if self.environment in ("production", "staging"):
            if not self.ledger_package_id:
                raise ValueError(f"ledger_package_id must be set in {self.environment} environment")
            if self.key_server_count < self.key_server_threshold:
                raise ValueError(
                    f"key_server_urls must list at least {self.key_server_threshold} servers "
                    f"in {self.environment} environment"
                )
            if self.debug:
                raise ValueError(f"debug must be False in {self.environment} environment")
        else:
            if not self.ledger_package_id:
                warnings.warn(
                    "ledger_package_id is empty; policies will not reference a deployed "
                    "contract. Set it before deploying.",
                    UserWarning,
                    stacklevel=2,
                )
        return self


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, parsed once. Tests call ``get_settings.cache_clear()``."""
    return Settings()
