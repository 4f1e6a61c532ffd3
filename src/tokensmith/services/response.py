"""Token response validation and cache write-back.

Turns a raw token endpoint response into validated, normalized data,
builds the cache rows it implies (account, ID token, access token, refresh
token, app metadata), writes them as one batch and synthesizes the
``AuthenticationResult``.

All timestamps of one response derive from a single ``request_timestamp``
captured once, at validation time.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from tokensmith.config import ClientConfig
from tokensmith.models.authority import Authority
from tokensmith.models.cache_keys import CredentialType
from tokensmith.models.entities import (
    TOKEN_TYPE_BEARER,
    AccessToken,
    Account,
    AppMetadata,
    CacheEntity,
    IdToken,
    RefreshToken,
)
from tokensmith.models.errors import (
    CacheIOError,
    InvalidTokenError,
    MalformedEntityError,
    ServerResponseError,
)
from tokensmith.models.requests import GrantRequest
from tokensmith.models.tokens import (
    AuthenticationResult,
    CacheWriteWarning,
    TokenResponse,
)
from tokensmith.primitives.crypto import CryptoProvider
from tokensmith.primitives.scopes import ScopeSet
from tokensmith.services.cache import CacheManager, mask_home_account_id
from tokensmith.services.network import NetworkResponse
from tokensmith.services.request_builder import merge_claims

logger = logging.getLogger(__name__)

REQUIRED_SUCCESS_FIELDS = ("access_token", "token_type", "expires_in")


def requested_claims_hash(crypto: CryptoProvider, claims: str | None) -> str | None:
    """Hash binding an access token to the claims it was requested with."""
    if merge_claims(claims) is None:
        return None
    return crypto.hash_string(claims)


@dataclass(frozen=True)
class ValidatedResponse:
    """A successful token response with every derived value computed."""

    response: TokenResponse
    request_timestamp: int
    expires_on: int
    extended_expires_on: int
    refresh_on: int | None
    granted_scopes: ScopeSet
    home_account_id: str
    id_token_claims: dict[str, Any] = field(default_factory=dict)
    # Account the request was made for, when the caller knows it (silent refresh)
    account: Account | None = None


@dataclass(frozen=True)
class CacheRecord:
    """The rows one token response produces."""

    account: Account | None = None
    id_token: IdToken | None = None
    access_token: AccessToken | None = None
    refresh_token: RefreshToken | None = None
    app_metadata: AppMetadata | None = None


class ResponseHandler:
    """Validates token responses and writes them back to the cache."""

    def __init__(
        self,
        config: ClientConfig,
        cache: CacheManager,
        crypto: CryptoProvider,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.cache = cache
        self.crypto = crypto
        self._clock = clock

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(
        self,
        network_response: NetworkResponse,
        request: GrantRequest,
        request_scopes: ScopeSet,
        authority: Authority,
        request_timestamp: int | None = None,
        *,
        account: Account | None = None,
    ) -> ValidatedResponse:
        """Validate a token endpoint response and derive cacheable values.

        Args:
            network_response: Decoded response from the token endpoint
            request: The request the response answers
            request_scopes: Scopes sent with the request
            authority: Authority the request was sent to
            request_timestamp: Epoch seconds used for every expiry value;
                taken from the clock when omitted
            account: Account the request was made for. Refresh responses
                often carry neither client_info nor an ID token; the rows
                they produce then belong to this account.

        Raises:
            ServerResponseError: Error body, missing required fields, or an
                ID token issued for another audience or issuer
            InvalidTokenError: Undecodable ID token or client_info
        """
        if request_timestamp is None:
            request_timestamp = int(self._clock())

        response = self._parse(network_response, request)

        missing = [f for f in REQUIRED_SUCCESS_FIELDS if getattr(response, f) in (None, "")]
        if missing:
            raise ServerResponseError(
                f"Token response missing required fields: {', '.join(missing)}",
                status_code=network_response.status_code,
                correlation_id=request.correlation_id,
            )

        claims: dict[str, Any] = {}
        if response.id_token:
            claims = self.crypto.extract_token_claims(response.id_token)
            self._validate_id_token_claims(claims, authority, request)

        home_account_id = self._home_account_id(response.client_info, claims)
        if not home_account_id and account is not None:
            home_account_id = account.home_account_id

        expires_on = request_timestamp + response.expires_in
        ext_expires_in = response.ext_expires_in or response.expires_in
        refresh_on = (
            request_timestamp + response.refresh_in if response.refresh_in else None
        )
        granted = (
            ScopeSet.from_string(response.scope) if response.scope else request_scopes
        )

        logger.info(
            f"Token response validated for {mask_home_account_id(home_account_id)} "
            f"(correlation_id={request.correlation_id})"
        )

        return ValidatedResponse(
            response=response,
            request_timestamp=request_timestamp,
            expires_on=expires_on,
            extended_expires_on=request_timestamp + ext_expires_in,
            refresh_on=refresh_on,
            granted_scopes=granted,
            home_account_id=home_account_id,
            id_token_claims=claims,
            account=account,
        )

    def _parse(
        self, network_response: NetworkResponse, request: GrantRequest
    ) -> TokenResponse:
        try:
            response = TokenResponse(**network_response.body)
        except (TypeError, ValidationError) as e:
            raise ServerResponseError(
                f"Invalid token response format: {e}",
                status_code=network_response.status_code,
                correlation_id=request.correlation_id,
            ) from e

        if response.is_error() or network_response.status_code >= 400:
            error_code = response.error or "unknown_error"
            logger.warning(
                f"Token request failed with {network_response.status_code}: "
                f"{error_code} - {response.error_description or 'No description provided'}"
            )
            raise ServerResponseError(
                f"Token request failed: {error_code}",
                error=response.error,
                error_description=response.error_description,
                error_codes=response.error_codes,
                suberror=response.suberror,
                status_code=network_response.status_code,
                correlation_id=response.correlation_id or request.correlation_id,
            )
        return response

    def _validate_id_token_claims(
        self, claims: dict[str, Any], authority: Authority, request: GrantRequest
    ) -> None:
        audience = claims.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if self.config.client_id not in audiences:
            raise ServerResponseError(
                f"ID token audience {audience!r} does not match client "
                f"{self.config.client_id}",
                error="invalid_id_token",
                correlation_id=request.correlation_id,
            )

        if authority.issuer:
            expected = authority.issuer.replace("{tenantid}", str(claims.get("tid", "")))
            if claims.get("iss") != expected:
                raise ServerResponseError(
                    f"ID token issuer {claims.get('iss')!r} does not match {expected!r}",
                    error="invalid_id_token",
                    correlation_id=request.correlation_id,
                )

    def _home_account_id(
        self, client_info: str | None, claims: dict[str, Any]
    ) -> str:
        """``{uid}.{utid}`` from client_info, else the ID token subject."""
        if client_info:
            try:
                decoded = json.loads(self.crypto.base64_decode(client_info))
            except ValueError as e:
                raise InvalidTokenError(
                    f"client_info is not valid JSON: {e}", token_kind="client_info"
                ) from e
            if (
                not isinstance(decoded, dict)
                or not decoded.get("uid")
                or not decoded.get("utid")
            ):
                raise InvalidTokenError(
                    "client_info must contain uid and utid", token_kind="client_info"
                )
            return f"{decoded['uid']}.{decoded['utid']}"

        return str(claims.get("sub", ""))

    # ------------------------------------------------------------------
    # Cache rows
    # ------------------------------------------------------------------

    def build_cache_record(
        self, validated: ValidatedResponse, request: GrantRequest, authority: Authority
    ) -> CacheRecord:
        """Build the rows a validated response produces.

        Raises:
            ServerResponseError: If the response values cannot form valid
                cache rows (e.g. a pop token answering a bearer request)
        """
        try:
            return self._build_rows(validated, request, authority)
        except ValidationError as e:
            raise ServerResponseError(
                f"Token response cannot be cached: {e}",
                correlation_id=request.correlation_id,
            ) from e

    def _build_rows(
        self, validated: ValidatedResponse, request: GrantRequest, authority: Authority
    ) -> CacheRecord:
        response = validated.response
        claims = validated.id_token_claims
        home_account_id = validated.home_account_id
        client_id = self.config.client_id

        environment = authority.environment
        realm = str(claims.get("tid") or authority.tenant)
        known = validated.account
        if known is not None and known.home_account_id == home_account_id:
            # Rows replace the account's own, so reuse its environment and realm
            if known.environment.lower() in authority.get_aliases():
                environment = known.environment
            if not claims.get("tid"):
                realm = known.realm

        account = None
        id_token = None
        if response.id_token:
            account = Account(
                home_account_id=home_account_id,
                environment=environment,
                realm=realm,
                local_account_id=str(claims.get("oid") or claims.get("sub") or ""),
                username=str(
                    claims.get("preferred_username")
                    or claims.get("upn")
                    or claims.get("email")
                    or ""
                ),
                authority_type=authority.authority_type,
                client_info=response.client_info,
                name=claims.get("name"),
            )
            id_token = IdToken(
                home_account_id=home_account_id,
                environment=environment,
                credential_type=CredentialType.ID_TOKEN,
                client_id=client_id,
                secret=response.id_token,
                realm=realm,
            )

        token_type = response.token_type or TOKEN_TYPE_BEARER
        is_bearer = token_type.lower() == TOKEN_TYPE_BEARER.lower()
        access_token = AccessToken(
            home_account_id=home_account_id,
            environment=environment,
            credential_type=(
                CredentialType.ACCESS_TOKEN
                if is_bearer
                else CredentialType.ACCESS_TOKEN_WITH_AUTH_SCHEME
            ),
            client_id=client_id,
            secret=response.access_token,
            realm=realm,
            target=validated.granted_scopes.to_target(),
            cached_at=validated.request_timestamp,
            expires_on=validated.expires_on,
            extended_expires_on=validated.extended_expires_on,
            refresh_on=validated.refresh_on,
            token_type=token_type,
            key_id=None if is_bearer else request.key_id,
            requested_claims_hash=requested_claims_hash(self.crypto, request.claims),
        )

        refresh_token = None
        if response.refresh_token:
            refresh_token = RefreshToken(
                home_account_id=home_account_id,
                environment=environment,
                credential_type=CredentialType.REFRESH_TOKEN,
                client_id=client_id,
                secret=response.refresh_token,
                family_id=response.foci,
            )

        app_metadata = None
        if home_account_id:
            app_metadata = AppMetadata(
                environment=environment, client_id=client_id, family_id=response.foci
            )

        return CacheRecord(
            account=account,
            id_token=id_token,
            access_token=access_token,
            refresh_token=refresh_token,
            app_metadata=app_metadata,
        )

    async def save(self, record: CacheRecord) -> list[CacheWriteWarning]:
        """Write every row of ``record``; individual failures become warnings.

        The batch runs shielded: a caller that stops waiting does not stop
        the writes that have started.
        """
        return await asyncio.shield(self._write_batch(record))

    async def _write_batch(self, record: CacheRecord) -> list[CacheWriteWarning]:
        writes: list[tuple[CacheEntity | None, Callable]] = [
            (record.account, self.cache.set_account),
            (record.id_token, self.cache.set_id_token),
            (record.access_token, self.cache.set_access_token),
            (record.refresh_token, self.cache.set_refresh_token),
            (record.app_metadata, self.cache.set_app_metadata),
        ]

        warnings: list[CacheWriteWarning] = []
        for entity, write in writes:
            if entity is None:
                continue
            try:
                await write(entity)
            except (CacheIOError, MalformedEntityError) as e:
                logger.warning(f"Failed to cache {entity.entity_name}: {e}")
                warnings.append(
                    CacheWriteWarning(
                        entity=entity.entity_name, key=getattr(e, "key", None), error=e
                    )
                )
        return warnings

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    def to_result(
        self,
        validated: ValidatedResponse,
        record: CacheRecord,
        request: GrantRequest,
        warnings: list[CacheWriteWarning],
    ) -> AuthenticationResult:
        response = validated.response
        return AuthenticationResult(
            access_token=response.access_token,
            scopes=validated.granted_scopes.as_list(),
            expires_on=validated.expires_on,
            extended_expires_on=validated.extended_expires_on,
            refresh_on=validated.refresh_on,
            id_token=response.id_token or "",
            id_token_claims=validated.id_token_claims,
            account=record.account or validated.account,
            token_type=response.token_type or TOKEN_TYPE_BEARER,
            state=request.state,
            correlation_id=request.correlation_id,
            family_id=response.foci,
            warnings=tuple(warnings),
        )
