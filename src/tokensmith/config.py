"""Client configuration.

``ClientSettings`` loads configuration from the environment
(``TOKENSMITH_*``), an optional ``.env`` file, or keyword arguments, and
validates it up front. The token pipeline itself only sees the immutable
``ClientConfig`` derived from it.

Example:
    settings = ClientSettings(client_id="my-app-id")
    client = TokenClient.from_settings(settings)
"""

from __future__ import annotations

import logging
import platform
import sys
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tokensmith.models.errors import ClientConfigurationError

LIBRARY_SKU = "tokensmith.python"
LIB_CAPABILITY_VALUE = "retry-after, h429"


def _library_version() -> str:
    try:
        return version("tokensmith")
    except PackageNotFoundError:
        return "0.0.0"


@dataclass(frozen=True)
class ClientTelemetry:
    """Library and application identification sent with every token request."""

    sku: str = LIBRARY_SKU
    version: str = field(default_factory=_library_version)
    os: str = sys.platform
    cpu: str = field(default_factory=platform.machine)
    app_name: str | None = None
    app_version: str | None = None

    def to_parameters(self) -> dict[str, str]:
        params = {
            "x-client-SKU": self.sku,
            "x-client-VER": self.version,
            "x-client-OS": self.os,
            "x-client-CPU": self.cpu,
        }
        if self.app_name:
            params["x-app-name"] = self.app_name
        if self.app_version:
            params["x-app-ver"] = self.app_version
        params["x-ms-lib-capability"] = LIB_CAPABILITY_VALUE
        return params


@dataclass(frozen=True)
class ClientConfig:
    """Immutable client configuration consumed by the token pipeline."""

    client_id: str
    client_secret: str | None = None
    client_capabilities: tuple[str, ...] = ()
    telemetry: ClientTelemetry = field(default_factory=ClientTelemetry)

    def __post_init__(self) -> None:
        if not self.client_id:
            raise ClientConfigurationError("client_id is required", field="client_id")


class ClientSettings(BaseSettings):
    """Token client configuration with sensible defaults.

    Configuration priority (later overrides earlier):
    1. Built-in defaults
    2. ``.env`` file
    3. Environment variables (TOKENSMITH_* prefix)
    4. Keyword arguments
    """

    model_config = SettingsConfigDict(
        env_prefix="TOKENSMITH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Client identity
    # ========================================

    client_id: str = Field(..., min_length=1, description="Application (client) ID")

    client_secret: str | None = Field(
        default=None, description="Client secret for confidential clients"
    )

    client_capabilities: list[str] = Field(
        default_factory=list,
        description="Capabilities advertised to the server through the claims request",
    )

    application_name: str | None = Field(
        default=None, description="Application name sent as x-app-name"
    )

    application_version: str | None = Field(
        default=None, description="Application version sent as x-app-ver"
    )

    # ========================================
    # Authority
    # ========================================

    authority: str = Field(
        default="https://login.microsoftonline.com/common",
        description="Authority URL: https://{host}/{tenant}",
    )

    authority_aliases: list[str] = Field(
        default_factory=list,
        description="Hostnames equivalent to the authority host for cache lookups",
    )

    token_endpoint: str | None = Field(
        default=None, description="Token endpoint override (skips the v2.0 default)"
    )

    issuer: str | None = Field(
        default=None, description="Expected ID token issuer; unchecked when unset"
    )

    # ========================================
    # Cache and transport
    # ========================================

    access_token_renewal_buffer_seconds: int = Field(
        default=300,
        ge=0,
        description="Access tokens expiring within this window are renewed",
    )

    http_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    cache_path: str | None = Field(
        default=None, description="JSON file for a persistent cache; memory when unset"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING", description="Level applied by configure_logging()"
    )

    @field_validator("authority")
    @classmethod
    def validate_authority(cls, v: str) -> str:
        if not v.startswith("https://"):
            raise ValueError(f"Authority must use HTTPS: {v}")
        return v.rstrip("/")

    def to_client_config(self) -> ClientConfig:
        return ClientConfig(
            client_id=self.client_id,
            client_secret=self.client_secret,
            client_capabilities=tuple(self.client_capabilities),
            telemetry=ClientTelemetry(
                app_name=self.application_name,
                app_version=self.application_version,
            ),
        )


def configure_logging(level: str = "WARNING") -> logging.Logger:
    """Set the level of the library's root logger.

    The library never installs handlers; applications configure those.
    """
    logger = logging.getLogger("tokensmith")
    logger.setLevel(level)
    return logger
