"""Shared fixtures: fixed clock, stores, token factories and the mock cache seed."""

import base64
import json

import pytest

from tokensmith.config import ClientConfig, ClientTelemetry
from tokensmith.models.authority import StaticAuthority
from tokensmith.models.entities import (
    AccessToken,
    Account,
    AppMetadata,
    IdToken,
    RefreshToken,
)
from tokensmith.primitives.crypto import DefaultCrypto
from tokensmith.services.cache import CacheManager
from tokensmith.storage.memory import InMemoryStore

POP_KID = "V6N_HMPagNpYS_wxM14X73q3eWzbTr9Z31RyHkIcN0Y"


def _b64url(payload: dict) -> str:
    raw = json.dumps(payload).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


@pytest.fixture
def now() -> int:
    return 1000


@pytest.fixture
def clock(now):
    return lambda: now


@pytest.fixture
def crypto() -> DefaultCrypto:
    return DefaultCrypto()


@pytest.fixture
def make_id_token():
    """Build an unsigned JWT carrying ``claims``."""

    def factory(**claims) -> str:
        return f"{_b64url({'alg': 'none', 'typ': 'JWT'})}.{_b64url(claims)}."

    return factory


@pytest.fixture
def make_client_info():
    def factory(uid: str = "uid", utid: str = "utid") -> str:
        return _b64url({"uid": uid, "utid": utid})

    return factory


@pytest.fixture
def client_config() -> ClientConfig:
    return ClientConfig(
        client_id="mock_client_id",
        telemetry=ClientTelemetry(version="1.0.0", os="linux", cpu="x86_64"),
    )


@pytest.fixture
def authority() -> StaticAuthority:
    return StaticAuthority("https://login.microsoftonline.com/common")


@pytest.fixture
def mock_cache_entities() -> list:
    """Seed rows in the persisted camelCase layout, timestamps as strings."""
    return [
        Account.from_attributes(
            {
                "username": "John Doe",
                "localAccountId": "object1234",
                "realm": "microsoft",
                "environment": "login.microsoftonline.com",
                "homeAccountId": "uid.utid",
                "authorityType": "MSSTS",
                "clientInfo": "eyJ1aWQiOiJ1aWQiLCAidXRpZCI6InV0aWQifQ==",
            }
        ),
        IdToken.from_attributes(
            {
                "realm": "microsoft",
                "environment": "login.microsoftonline.com",
                "credentialType": "IdToken",
                "secret": "eyJhbGciOiJub25lIn0.eyJvaWQiOiAib2JqZWN0MTIzNCIsICJwcmVmZXJyZWRfdXNlcm5hbWUiOiAiSm9obiBEb2UiLCAic3ViIjogInN1YiJ9.",
                "clientId": "mock_client_id",
                "homeAccountId": "uid.utid",
            }
        ),
        AccessToken.from_attributes(
            {
                "environment": "login.microsoftonline.com",
                "credentialType": "AccessToken",
                "secret": "an access token",
                "realm": "microsoft",
                "target": "scope1 scope2 scope3",
                "clientId": "mock_client_id",
                "cachedAt": "1000",
                "homeAccountId": "uid.utid",
                "extendedExpiresOn": "4600",
                "expiresOn": "4600",
                "tokenType": "Bearer",
            }
        ),
        AccessToken.from_attributes(
            {
                "environment": "login.microsoftonline.com",
                "credentialType": "AccessToken",
                "secret": "an access token",
                "realm": "microsoft",
                "target": "scope4 scope5",
                "clientId": "mock_client_id",
                "cachedAt": "1000",
                "homeAccountId": "uid.utid",
                "extendedExpiresOn": "4600",
                "expiresOn": "4600",
                "tokenType": "Bearer",
            }
        ),
        AccessToken.from_attributes(
            {
                "environment": "login.microsoftonline.com",
                "credentialType": "AccessToken_With_AuthScheme",
                "secret": "a pop access token",
                "realm": "microsoft",
                "target": "scope1 scope2 scope3",
                "clientId": "mock_client_id",
                "cachedAt": "1000",
                "homeAccountId": "uid.utid",
                "extendedExpiresOn": "4600",
                "expiresOn": "4600",
                "tokenType": "pop",
                "keyId": POP_KID,
            }
        ),
        RefreshToken.from_attributes(
            {
                "environment": "login.microsoftonline.com",
                "credentialType": "RefreshToken",
                "secret": "a refresh token",
                "clientId": "mock_client_id",
                "homeAccountId": "uid.utid",
            }
        ),
        RefreshToken.from_attributes(
            {
                "environment": "login.microsoftonline.com",
                "credentialType": "RefreshToken_With_AuthScheme",
                "secret": "a pop refresh token",
                "clientId": "mock_client_id",
                "homeAccountId": "uid.utid",
                "tokenType": "pop",
                "stkKid": POP_KID,
                "skKid": POP_KID,
            }
        ),
        RefreshToken.from_attributes(
            {
                "environment": "login.microsoftonline.com",
                "credentialType": "RefreshToken",
                "secret": "a family refresh token",
                "clientId": "mock_client_id_1",
                "homeAccountId": "uid.utid",
                "familyId": "1",
            }
        ),
        RefreshToken.from_attributes(
            {
                "environment": "login.microsoftonline.com",
                "credentialType": "RefreshToken_With_AuthScheme",
                "secret": "a pop family refresh token",
                "clientId": "mock_client_id",
                "homeAccountId": "uid.utid",
                "tokenType": "pop",
                "stkKid": POP_KID,
                "skKid": POP_KID,
                "familyId": "1",
            }
        ),
        AppMetadata.from_attributes(
            {
                "environment": "login.microsoftonline.com",
                "familyId": "1",
                "clientId": "mock_client_id_1",
            }
        ),
    ]


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def seeded_store(mock_cache_entities) -> InMemoryStore:
    return InMemoryStore({entity.key(): entity.to_json() for entity in mock_cache_entities})


@pytest.fixture
def cache(seeded_store, clock) -> CacheManager:
    return CacheManager(seeded_store, clock=clock)
