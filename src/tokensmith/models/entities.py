"""Cache entity models.

Typed records for everything the token cache persists. Each record is
validated once, at construction, and is immutable afterwards; "updating" a
row means writing a new record under the same key.

Persisted values use the camelCase attribute names (``homeAccountId``,
``credentialType``, ...) and decimal-string timestamps so that the flat
key -> JSON mapping stays interoperable with other readers of the cache.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Annotated, Any, ClassVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from tokensmith.models.cache_keys import CacheKey, CredentialType
from tokensmith.models.errors import MalformedEntityError
from tokensmith.primitives.scopes import ScopeSet

AUTHORITY_TYPE_AAD = "MSSTS"
AUTHORITY_TYPE_GENERIC = "Generic"
TOKEN_TYPE_BEARER = "Bearer"
TOKEN_TYPE_POP = "pop"

EpochSeconds = Annotated[int, PlainSerializer(str, return_type=str)]


class CacheEntity(BaseModel):
    """Base for all persisted cache records."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        use_enum_values=False,
    )

    entity_name: ClassVar[str] = "entity"

    @classmethod
    def from_attributes(
        cls, attributes: Mapping[str, Any], *, key: str | None = None
    ):
        """Build a validated record from a flat attribute mapping.

        Raises:
            MalformedEntityError: If required fields are missing, a field has
                the wrong shape, or ``credentialType`` names another kind.
        """
        try:
            return cls.model_validate(dict(attributes))
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or None
            raise MalformedEntityError(
                f"Invalid {cls.entity_name} record: {first['msg']}",
                key=key,
                entity=cls.entity_name,
                field=field,
            ) from e

    @classmethod
    def from_json(cls, raw: str, *, key: str | None = None):
        try:
            attributes = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MalformedEntityError(
                f"Stored {cls.entity_name} value is not valid JSON",
                key=key,
                entity=cls.entity_name,
            ) from e
        if not isinstance(attributes, dict):
            raise MalformedEntityError(
                f"Stored {cls.entity_name} value is not a JSON object",
                key=key,
                entity=cls.entity_name,
            )
        return cls.from_attributes(attributes, key=key)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def cache_key(self) -> CacheKey:
        raise NotImplementedError

    def key(self) -> str:
        return self.cache_key().serialize()


@dataclass(frozen=True)
class CredentialFilter:
    """Partial set of attribute constraints; ``None`` means "any".

    ``environments`` holds every alias of the authority host, so a row
    written under one alias matches a lookup made under another.
    """

    home_account_id: str | None = None
    environments: frozenset[str] | None = None
    realm: str | None = None
    client_id: str | None = None
    family_id: str | None = None
    credential_type: CredentialType | None = None
    target: ScopeSet | None = None
    key_id: str | None = None
    requested_claims_hash: str | None = None

    @classmethod
    def for_environments(cls, environments, **constraints) -> CredentialFilter:
        return cls(
            environments=frozenset(env.lower() for env in environments), **constraints
        )

    def matches_environment(self, environment: str) -> bool:
        return self.environments is None or environment.lower() in self.environments

    def matches_realm(self, realm: str | None) -> bool:
        return self.realm is None or (realm or "").lower() == self.realm.lower()


class Account(CacheEntity):
    """One signed-in user in one tenant of one cloud environment."""

    entity_name: ClassVar[str] = "Account"

    home_account_id: str = Field(min_length=1)
    environment: str = Field(min_length=1)
    realm: str
    local_account_id: str
    username: str
    authority_type: str = AUTHORITY_TYPE_AAD
    client_info: str | None = None
    name: str | None = None

    def cache_key(self) -> CacheKey:
        return CacheKey.for_account(self.home_account_id, self.environment, self.realm)

    def matches(self, flt: CredentialFilter) -> bool:
        if flt.home_account_id is not None and self.home_account_id != flt.home_account_id:
            return False
        return flt.matches_environment(self.environment) and flt.matches_realm(self.realm)


class Credential(CacheEntity):
    """Fields shared by ID, access and refresh tokens."""

    allowed_credential_types: ClassVar[tuple[CredentialType, ...]] = ()

    home_account_id: str
    environment: str = Field(min_length=1)
    credential_type: CredentialType
    client_id: str = Field(min_length=1)
    secret: str = Field(min_length=1)

    @field_validator("credential_type")
    @classmethod
    def validate_credential_type(cls, v: CredentialType) -> CredentialType:
        if v not in cls.allowed_credential_types:
            raise ValueError(f"credentialType {v.value!r} is not a {cls.entity_name}")
        return v

    def matches(self, flt: CredentialFilter) -> bool:
        if flt.home_account_id is not None and self.home_account_id != flt.home_account_id:
            return False
        if not flt.matches_environment(self.environment):
            return False
        if flt.credential_type is not None and self.credential_type != flt.credential_type:
            return False
        if flt.client_id is not None and self.client_id != flt.client_id:
            return False
        return True


class IdToken(Credential):
    entity_name: ClassVar[str] = "IdToken"
    allowed_credential_types = (CredentialType.ID_TOKEN,)

    realm: str = ""

    def cache_key(self) -> CacheKey:
        return CacheKey.for_credential(
            self.credential_type,
            self.home_account_id,
            self.environment,
            self.client_id,
            self.realm,
        )

    def matches(self, flt: CredentialFilter) -> bool:
        return super().matches(flt) and flt.matches_realm(self.realm)


class AccessToken(Credential):
    entity_name: ClassVar[str] = "AccessToken"
    allowed_credential_types = (
        CredentialType.ACCESS_TOKEN,
        CredentialType.ACCESS_TOKEN_WITH_AUTH_SCHEME,
    )

    realm: str = ""
    target: str = Field(min_length=1)
    cached_at: EpochSeconds
    expires_on: EpochSeconds
    extended_expires_on: EpochSeconds | None = None
    refresh_on: EpochSeconds | None = None
    token_type: str = TOKEN_TYPE_BEARER
    key_id: str | None = None
    requested_claims_hash: str | None = None

    @model_validator(mode="after")
    def validate_pop_binding(self) -> AccessToken:
        if self.token_type.lower() == TOKEN_TYPE_POP and not self.key_id:
            raise ValueError("pop access tokens require keyId")
        return self

    @property
    def scopes(self) -> ScopeSet:
        return ScopeSet.from_string(self.target)

    def is_expired(self, now: float, buffer_seconds: int = 0) -> bool:
        return now + buffer_seconds >= self.expires_on

    def cache_key(self) -> CacheKey:
        qualifiers = [self.client_id, self.realm, self.target]
        if self.requested_claims_hash:
            qualifiers.append(self.requested_claims_hash)
        return CacheKey.for_credential(
            self.credential_type, self.home_account_id, self.environment, *qualifiers
        )

    def matches(self, flt: CredentialFilter) -> bool:
        if not (super().matches(flt) and flt.matches_realm(self.realm)):
            return False
        if flt.target is not None and not flt.target.issubset(self.scopes):
            return False
        if flt.key_id is not None and self.key_id != flt.key_id:
            return False
        if (
            flt.requested_claims_hash is not None
            and self.requested_claims_hash != flt.requested_claims_hash
        ):
            return False
        return True


class RefreshToken(Credential):
    entity_name: ClassVar[str] = "RefreshToken"
    allowed_credential_types = (
        CredentialType.REFRESH_TOKEN,
        CredentialType.REFRESH_TOKEN_WITH_AUTH_SCHEME,
    )

    family_id: str | None = None
    token_type: str | None = None
    stk_kid: str | None = None
    sk_kid: str | None = None

    def cache_key(self) -> CacheKey:
        return CacheKey.for_credential(
            self.credential_type,
            self.home_account_id,
            self.environment,
            self.family_id or self.client_id,
        )

    def matches(self, flt: CredentialFilter) -> bool:
        if flt.family_id is not None:
            # Family tokens are shared, so the writing client does not matter.
            flt_without_client = CredentialFilter(
                home_account_id=flt.home_account_id,
                environments=flt.environments,
                credential_type=flt.credential_type,
            )
            return self.family_id == flt.family_id and super().matches(
                flt_without_client
            )
        return super().matches(flt)


class AppMetadata(CacheEntity):
    """Whether a client belongs to a family of clients sharing refresh tokens."""

    entity_name: ClassVar[str] = "AppMetadata"

    environment: str = Field(min_length=1)
    client_id: str = Field(min_length=1)
    family_id: str | None = None

    def cache_key(self) -> CacheKey:
        return CacheKey.for_app_metadata(self.environment, self.client_id)

    def matches(self, flt: CredentialFilter) -> bool:
        if flt.client_id is not None and self.client_id != flt.client_id:
            return False
        if flt.family_id is not None and self.family_id != flt.family_id:
            return False
        return flt.matches_environment(self.environment)


class ThrottlingEntry(CacheEntity):
    """Server-requested back-off for one request shape."""

    entity_name: ClassVar[str] = "ThrottlingEntry"

    throttle_time: EpochSeconds
    error: str | None = None
    error_codes: list[int] = Field(default_factory=list)
    error_message: str | None = None
    suberror: str | None = None
