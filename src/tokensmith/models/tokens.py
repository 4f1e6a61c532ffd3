"""Token response and authentication result models.

``TokenResponse`` is the raw token endpoint body (RFC 6749 Section 5) as
received. ``AuthenticationResult`` is what callers get back: normalized
scopes, tokens, account and epoch-second expiry timestamps.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from tokensmith.models.entities import TOKEN_TYPE_BEARER, Account

logger = logging.getLogger(__name__)


class TokenResponse(BaseModel):
    """Token endpoint response body.

    Represents both successful responses (Section 5.1) and error responses
    (Section 5.2), plus the OIDC and provider extensions the cache needs.
    """

    model_config = ConfigDict(extra="allow")

    # Success response fields (RFC 6749 Section 5.1)
    access_token: str | None = None
    token_type: str | None = None
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None

    # OIDC and provider extensions
    id_token: str | None = None
    client_info: str | None = None
    ext_expires_in: int | None = None
    refresh_in: int | None = None
    foci: str | None = None  # Family id when the client belongs to a family

    # Error response fields (RFC 6749 Section 5.2)
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None
    error_codes: list[int] | None = None
    suberror: str | None = None
    correlation_id: str | None = None
    trace_id: str | None = None

    @field_validator("foci", mode="before")
    @classmethod
    def coerce_foci(cls, v: Any) -> str | None:
        return None if v is None or v == "" else str(v)

    def is_error(self) -> bool:
        """Check if token response indicates an error."""
        return self.error is not None


@dataclass(frozen=True)
class CacheWriteWarning:
    """A cache row that could not be written after a successful acquisition."""

    entity: str
    key: str | None
    error: Exception


class AcquisitionState(str, Enum):
    PENDING = "pending"
    REQUESTED = "requested"
    VALIDATED = "validated"
    CACHED = "cached"
    RETURNED = "returned"
    FAILED = "failed"


# Which states may follow each state. FAILED is reachable from anywhere.
_TRANSITIONS: dict[AcquisitionState, frozenset[AcquisitionState]] = {
    AcquisitionState.PENDING: frozenset(
        {AcquisitionState.REQUESTED, AcquisitionState.RETURNED}
    ),
    AcquisitionState.REQUESTED: frozenset({AcquisitionState.VALIDATED}),
    AcquisitionState.VALIDATED: frozenset({AcquisitionState.CACHED}),
    AcquisitionState.CACHED: frozenset({AcquisitionState.RETURNED}),
    AcquisitionState.RETURNED: frozenset(),
    AcquisitionState.FAILED: frozenset(),
}


@dataclass
class Acquisition:
    """Progress of one acquisition through the token pipeline."""

    correlation_id: str
    state: AcquisitionState = AcquisitionState.PENDING
    history: list[AcquisitionState] = field(
        default_factory=lambda: [AcquisitionState.PENDING]
    )

    def advance(self, state: AcquisitionState) -> None:
        if state is not AcquisitionState.FAILED and state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid acquisition transition {self.state.value} -> {state.value}"
            )
        logger.debug(
            f"Acquisition {self.correlation_id}: {self.state.value} -> {state.value}"
        )
        self.state = state
        self.history.append(state)

    def fail(self) -> None:
        if self.state not in (AcquisitionState.RETURNED, AcquisitionState.FAILED):
            self.advance(AcquisitionState.FAILED)


@dataclass(frozen=True)
class AuthenticationResult:
    """Normalized outcome of a token acquisition."""

    access_token: str
    scopes: list[str]
    expires_on: int
    extended_expires_on: int
    id_token: str = ""
    id_token_claims: dict[str, Any] = field(default_factory=dict)
    account: Account | None = None
    token_type: str = TOKEN_TYPE_BEARER
    state: str = ""
    correlation_id: str | None = None
    refresh_on: int | None = None
    from_cache: bool = False
    family_id: str | None = None
    warnings: tuple[CacheWriteWarning, ...] = ()
    state_history: tuple[AcquisitionState, ...] = ()

    @property
    def tenant_id(self) -> str | None:
        return self.id_token_claims.get("tid") or (
            self.account.realm if self.account else None
        )
