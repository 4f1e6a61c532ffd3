"""Structured cache keys.

Every cache row lives under a dash-joined string key. Writers and readers
both go through ``CacheKey`` so the key format cannot drift between them:

    Account       {homeAccountId}-{environment}-{realm}
    IdToken       {homeAccountId}-{environment}-IdToken-{clientId}-{realm}
    AccessToken   {homeAccountId}-{environment}-{credentialType}-{clientId}-{realm}-{target}[-{requestedClaimsHash}]
    RefreshToken  {homeAccountId}-{environment}-{credentialType}-{clientId or familyId}
    AppMetadata   AppMetadata-{environment}-{clientId}
    Throttling    throttling.{clientId}.{authority}.{scopes}...

Segment values (GUIDs, hostnames, scopes) may contain dashes themselves, so
parsing only recovers what is unambiguous: the entity kind, the credential
type, and the two halves on either side of the credential-type marker.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

APP_METADATA_PREFIX = "AppMetadata"
THROTTLING_PREFIX = "throttling"
KEY_SEPARATOR = "-"


class CredentialType(str, Enum):
    ID_TOKEN = "IdToken"
    ACCESS_TOKEN = "AccessToken"
    ACCESS_TOKEN_WITH_AUTH_SCHEME = "AccessToken_With_AuthScheme"
    REFRESH_TOKEN = "RefreshToken"
    REFRESH_TOKEN_WITH_AUTH_SCHEME = "RefreshToken_With_AuthScheme"

    @property
    def is_access_token(self) -> bool:
        return self in (
            CredentialType.ACCESS_TOKEN,
            CredentialType.ACCESS_TOKEN_WITH_AUTH_SCHEME,
        )

    @property
    def is_refresh_token(self) -> bool:
        return self in (
            CredentialType.REFRESH_TOKEN,
            CredentialType.REFRESH_TOKEN_WITH_AUTH_SCHEME,
        )


class EntityKind(str, Enum):
    ACCOUNT = "account"
    CREDENTIAL = "credential"
    APP_METADATA = "app_metadata"
    THROTTLING = "throttling"


# Longest first so "AccessToken" never shadows "AccessToken_With_AuthScheme".
_MARKERS = sorted(CredentialType, key=lambda c: len(c.value), reverse=True)


def _join(*segments: str) -> str:
    return KEY_SEPARATOR.join(segments)


@dataclass(frozen=True)
class CacheKey:
    """A parsed or constructed cache key.

    ``owner`` is everything before the credential-type marker (for accounts
    and app metadata, the whole key body) and ``qualifier`` everything after.
    """

    kind: EntityKind
    owner: str
    qualifier: str = ""
    credential_type: CredentialType | None = None

    @classmethod
    def for_account(
        cls, home_account_id: str, environment: str, realm: str
    ) -> CacheKey:
        return cls(EntityKind.ACCOUNT, _join(home_account_id, environment, realm))

    @classmethod
    def for_credential(
        cls,
        credential_type: CredentialType,
        home_account_id: str,
        environment: str,
        *qualifiers: str,
    ) -> CacheKey:
        return cls(
            EntityKind.CREDENTIAL,
            owner=_join(home_account_id, environment),
            qualifier=_join(*qualifiers),
            credential_type=credential_type,
        )

    @classmethod
    def for_app_metadata(cls, environment: str, client_id: str) -> CacheKey:
        return cls(EntityKind.APP_METADATA, _join(environment, client_id))

    @classmethod
    def for_throttling(cls, *parts: str) -> CacheKey:
        return cls(EntityKind.THROTTLING, ".".join(parts).lower())

    def serialize(self) -> str:
        if self.kind is EntityKind.APP_METADATA:
            return _join(APP_METADATA_PREFIX, self.owner)
        if self.kind is EntityKind.THROTTLING:
            return f"{THROTTLING_PREFIX}.{self.owner}"
        if self.kind is EntityKind.CREDENTIAL:
            return _join(self.owner, self.credential_type.value, self.qualifier)
        return self.owner

    @classmethod
    def parse(cls, key: str) -> CacheKey:
        """Recover the structure of a serialized key.

        Keys that carry no credential-type marker and no known prefix are
        treated as account keys; whether they really are is decided when the
        value is decoded.
        """
        if key.startswith(APP_METADATA_PREFIX + KEY_SEPARATOR):
            return cls(EntityKind.APP_METADATA, key[len(APP_METADATA_PREFIX) + 1 :])
        if key.startswith(THROTTLING_PREFIX + "."):
            return cls(EntityKind.THROTTLING, key[len(THROTTLING_PREFIX) + 1 :])

        for credential_type in _MARKERS:
            marker = f"{KEY_SEPARATOR}{credential_type.value}{KEY_SEPARATOR}"
            owner, found, qualifier = key.partition(marker)
            if found:
                return cls(
                    EntityKind.CREDENTIAL,
                    owner=owner,
                    qualifier=qualifier,
                    credential_type=credential_type,
                )

        return cls(EntityKind.ACCOUNT, key)

    def __str__(self) -> str:
        return self.serialize()
