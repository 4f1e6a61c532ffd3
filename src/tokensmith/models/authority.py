"""Authority models.

Metadata discovery (OpenID configuration retrieval) is not performed here;
the pipeline consumes an ``Authority`` that already knows its token
endpoint, issuer and host aliases. ``StaticAuthority`` builds one from an
authority URL plus optional metadata supplied by the application.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from tokensmith.models.entities import AUTHORITY_TYPE_AAD, AUTHORITY_TYPE_GENERIC

# Hosts that speak the AAD protocol dialect (client_info, MSSTS accounts).
AAD_HOSTS = frozenset(
    {
        "login.microsoftonline.com",
        "login.windows.net",
        "login.microsoft.com",
        "sts.windows.net",
        "login.chinacloudapi.cn",
        "login.partner.microsoftonline.cn",
        "login.microsoftonline.us",
        "login.usgovcloudapi.net",
        "login-us.microsoftonline.com",
    }
)


class Authority(Protocol):
    """Capability interface for the identity provider endpoint set."""

    @property
    def environment(self) -> str: ...

    @property
    def tenant(self) -> str: ...

    @property
    def issuer(self) -> str | None: ...

    @property
    def authority_type(self) -> str: ...

    @property
    def canonical_authority(self) -> str: ...

    def get_token_endpoint(self) -> str: ...

    def get_aliases(self) -> frozenset[str]: ...


class AuthorityMetadata(BaseModel):
    """Subset of OpenID Provider Metadata the pipeline relies on."""

    token_endpoint: str
    issuer: str | None = None
    aliases: list[str] = Field(default_factory=list)

    @field_validator("token_endpoint")
    @classmethod
    def validate_token_endpoint(cls, v: str) -> str:
        if urlparse(v).scheme != "https":
            raise ValueError(f"Token endpoint must use HTTPS: {v}")
        return v


@dataclass(frozen=True)
class StaticAuthority:
    """Authority resolved from configuration rather than from the network.

    ``authority_url`` has the form ``https://{host}/{tenant}``. Without
    explicit metadata the token endpoint defaults to the v2.0 endpoint of
    that tenant.
    """

    authority_url: str
    metadata: AuthorityMetadata | None = None
    extra_aliases: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        parsed = urlparse(self.authority_url)
        if parsed.scheme != "https" or not parsed.hostname:
            raise ValueError(f"Authority must be an https URL: {self.authority_url}")
        if not parsed.path.strip("/"):
            raise ValueError(f"Authority URL has no tenant: {self.authority_url}")

    @property
    def environment(self) -> str:
        return urlparse(self.authority_url).netloc.lower()

    @property
    def tenant(self) -> str:
        return urlparse(self.authority_url).path.strip("/").split("/")[0]

    @property
    def canonical_authority(self) -> str:
        return f"https://{self.environment}/{self.tenant}"

    @property
    def issuer(self) -> str | None:
        return self.metadata.issuer if self.metadata else None

    @property
    def authority_type(self) -> str:
        if self.environment in AAD_HOSTS:
            return AUTHORITY_TYPE_AAD
        return AUTHORITY_TYPE_GENERIC

    def get_token_endpoint(self) -> str:
        if self.metadata:
            return self.metadata.token_endpoint
        return f"{self.canonical_authority}/oauth2/v2.0/token"

    def get_aliases(self) -> frozenset[str]:
        aliases = {self.environment}
        aliases.update(alias.lower() for alias in self.extra_aliases)
        if self.metadata:
            aliases.update(alias.lower() for alias in self.metadata.aliases)
        return frozenset(aliases)
