"""Provisioning settings.

Settings can be provided via:
1. Environment variables (IDM_PROVISION_*) or a .env file
2. CLI arguments (--url, --accept-invalid-certs, ...)
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TRACKING_GROUP = "ext_idm_provisioned_entities"


class ProvisionSettings(BaseSettings):
    """Connection and run settings for idm-provision."""

    model_config = SettingsConfigDict(
        env_prefix="IDM_PROVISION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Connection
    url: str = Field(
        default="https://localhost:8443",
        description="Base URL of the identity provider",
    )
    admin_token: str | None = Field(
        default=None,
        description="Administrative bearer token",
    )
    timeout: float = Field(
        default=30.0,
        description="HTTP request timeout in seconds",
    )
    accept_invalid_certs: bool = Field(
        default=False,
        description="Skip TLS certificate verification (testing instances only)",
    )

    # Reconciliation
    tracking_group: str = Field(
        default=DEFAULT_TRACKING_GROUP,
        description="Group whose members record entities created by this tool",
    )
    max_workers: int = Field(
        default=4,
        ge=1,
        description="Maximum number of concurrent write operations",
    )
    managed_oauth2_prefix: str | None = Field(
        default=None,
        description="Name prefix of resource servers eligible for orphan removal",
    )

    # Output
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    audit_json: bool = False

    @property
    def base_url(self) -> str:
        """URL without trailing slash."""
        return self.url.rstrip("/")

    @property
    def has_token(self) -> bool:
        return bool(self.admin_token)

    def with_overrides(
        self,
        *,
        url: str | None = None,
        admin_token: str | None = None,
        accept_invalid_certs: bool | None = None,
        max_workers: int | None = None,
        log_level: str | None = None,
        audit_json: bool | None = None,
    ) -> "ProvisionSettings":
        """Create a new settings instance with CLI overrides applied."""
        return self.model_copy(
            update={
                "url": url or self.url,
                "admin_token": admin_token or self.admin_token,
                "accept_invalid_certs": (
                    self.accept_invalid_certs
                    if accept_invalid_certs is None
                    else accept_invalid_certs
                ),
                "max_workers": max_workers or self.max_workers,
                "log_level": log_level or self.log_level,
                "audit_json": self.audit_json if audit_json is None else audit_json,
            }
        )
