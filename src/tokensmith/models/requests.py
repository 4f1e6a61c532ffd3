"""Token request models.

One immutable request type per supported grant. Each variant contributes
only what is specific to its grant: the fields it requires and the body
parameters those fields become. Everything else (scopes, telemetry, claims,
caller extras) is shared and handled by the request builder.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, ClassVar

from tokensmith.models.entities import TOKEN_TYPE_BEARER, TOKEN_TYPE_POP, Account
from tokensmith.models.errors import ClientConfigurationError

if TYPE_CHECKING:
    from tokensmith.config import ClientConfig


class GrantType(str, Enum):
    PASSWORD = "password"
    REFRESH_TOKEN = "refresh_token"
    AUTHORIZATION_CODE = "authorization_code"
    CLIENT_CREDENTIALS = "client_credentials"


def _new_correlation_id() -> str:
    return str(uuid.uuid4())


def _require(value: str | None, field_name: str, grant: GrantType) -> None:
    if not value:
        raise ClientConfigurationError(
            f"{field_name} is required for the {grant.value} grant", field=field_name
        )


@dataclass(frozen=True, kw_only=True)
class BaseTokenRequest:
    """Fields common to every acquisition request."""

    scopes: Sequence[str]
    authority: str | None = None
    correlation_id: str = field(default_factory=_new_correlation_id)
    claims: str | None = None
    state: str = ""
    auth_scheme: str = TOKEN_TYPE_BEARER
    key_id: str | None = None  # Proof-of-possession key binding
    token_query_parameters: Mapping[str, str] = field(default_factory=dict)
    extra_body_parameters: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_pop(self) -> bool:
        return self.auth_scheme.lower() == TOKEN_TYPE_POP

    def validate_common(self) -> None:
        if isinstance(self.scopes, str):
            raise ClientConfigurationError(
                "scopes must be a sequence of strings, not a string", field="scopes"
            )
        if not [s for s in self.scopes if s and s.strip()]:
            raise ClientConfigurationError("At least one scope is required", field="scopes")
        if self.is_pop and not self.key_id:
            raise ClientConfigurationError(
                "key_id is required for proof-of-possession requests", field="key_id"
            )


@dataclass(frozen=True, kw_only=True)
class GrantRequest(BaseTokenRequest):
    """Base for requests sent to the token endpoint."""

    grant_type: ClassVar[GrantType]
    # Whether openid/profile/offline_access are added to the scope parameter
    adds_oidc_scopes: ClassVar[bool] = True

    def validate(self, config: ClientConfig) -> None:
        """Check grant-specific required fields.

        Raises:
            ClientConfigurationError: If a required field is missing
        """
        self.validate_common()

    def grant_parameters(self) -> dict[str, str]:
        """Body parameters specific to this grant."""
        return {}


@dataclass(frozen=True, kw_only=True)
class PasswordGrantRequest(GrantRequest):
    """Resource owner password credentials grant (RFC 6749 Section 4.3)."""

    grant_type: ClassVar[GrantType] = GrantType.PASSWORD

    username: str = ""
    password: str = ""

    def validate(self, config: ClientConfig) -> None:
        super().validate(config)
        _require(self.username, "username", self.grant_type)
        _require(self.password, "password", self.grant_type)

    def grant_parameters(self) -> dict[str, str]:
        return {
            "username": self.username,
            "password": self.password,
            "response_type": "token id_token",
        }

    def __repr__(self) -> str:
        return (
            f"PasswordGrantRequest(scopes={list(self.scopes)!r}, "
            f"username={self.username!r}, password='***', "
            f"correlation_id={self.correlation_id!r})"
        )


@dataclass(frozen=True, kw_only=True)
class RefreshTokenGrantRequest(GrantRequest):
    """Refresh token grant (RFC 6749 Section 6)."""

    grant_type: ClassVar[GrantType] = GrantType.REFRESH_TOKEN

    refresh_token: str = ""

    def validate(self, config: ClientConfig) -> None:
        super().validate(config)
        _require(self.refresh_token, "refresh_token", self.grant_type)

    def grant_parameters(self) -> dict[str, str]:
        return {"refresh_token": self.refresh_token}

    def __repr__(self) -> str:
        return (
            f"RefreshTokenGrantRequest(scopes={list(self.scopes)!r}, "
            f"refresh_token='***', correlation_id={self.correlation_id!r})"
        )


@dataclass(frozen=True, kw_only=True)
class AuthorizationCodeGrantRequest(GrantRequest):
    """Authorization code grant (RFC 6749 Section 4.1.3) with PKCE (RFC 7636)."""

    grant_type: ClassVar[GrantType] = GrantType.AUTHORIZATION_CODE

    code: str = ""
    redirect_uri: str = ""
    code_verifier: str | None = None

    def validate(self, config: ClientConfig) -> None:
        super().validate(config)
        _require(self.code, "code", self.grant_type)
        _require(self.redirect_uri, "redirect_uri", self.grant_type)

    def grant_parameters(self) -> dict[str, str]:
        params = {"code": self.code, "redirect_uri": self.redirect_uri}
        if self.code_verifier:
            params["code_verifier"] = self.code_verifier
        return params


@dataclass(frozen=True, kw_only=True)
class ClientCredentialsGrantRequest(GrantRequest):
    """Client credentials grant (RFC 6749 Section 4.4).

    App-only tokens: no user, no ID token, no OIDC scopes.
    """

    grant_type: ClassVar[GrantType] = GrantType.CLIENT_CREDENTIALS
    adds_oidc_scopes: ClassVar[bool] = False

    force_refresh: bool = False

    def validate(self, config: ClientConfig) -> None:
        super().validate(config)
        if not config.client_secret:
            raise ClientConfigurationError(
                "client_secret is required for the client_credentials grant",
                field="client_secret",
            )


@dataclass(frozen=True, kw_only=True)
class SilentRequest(BaseTokenRequest):
    """Cache-first acquisition for an account that already signed in.

    Answered from a cached access token when possible, otherwise by
    redeeming a cached refresh token (the client's own or its family's).
    """

    account: Account
    force_refresh: bool = False

    def validate(self) -> None:
        self.validate_common()

    def to_refresh_request(self, refresh_token: str) -> RefreshTokenGrantRequest:
        return RefreshTokenGrantRequest(
            scopes=self.scopes,
            authority=self.authority,
            correlation_id=self.correlation_id,
            claims=self.claims,
            state=self.state,
            auth_scheme=self.auth_scheme,
            key_id=self.key_id,
            token_query_parameters=self.token_query_parameters,
            extra_body_parameters=self.extra_body_parameters,
            refresh_token=refresh_token,
        )
