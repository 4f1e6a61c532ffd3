"""Tests for the cache manager.

Covers the behaviour callers rely on:
- Exact and alias-aware account lookup
- Access token selection, expiry and auth scheme separation
- Corrupt row isolation and store failure wrapping
- Family refresh token resolution
- Whole-account removal, including partial failure
"""

import logging
import threading

import pytest

from tokensmith.models.cache_keys import CredentialType
from tokensmith.models.entities import (
    AccessToken,
    Account,
    AppMetadata,
    CredentialFilter,
    RefreshToken,
)
from tokensmith.models.errors import CacheIOError, CacheRemovalError, MalformedEntityError
from tokensmith.primitives.scopes import ScopeSet
from tokensmith.services.cache import CacheManager, mask_home_account_id
from tokensmith.storage.memory import InMemoryStore

ENV = "login.microsoftonline.com"
POP_KID = "V6N_HMPagNpYS_wxM14X73q3eWzbTr9Z31RyHkIcN0Y"


def _filter(*scopes: str, **constraints) -> CredentialFilter:
    return CredentialFilter.for_environments(
        [ENV],
        home_account_id="uid.utid",
        client_id="mock_client_id",
        realm="microsoft",
        target=ScopeSet(scopes),
        **constraints,
    )


def _access_token(target: str, cached_at: int = 1000, **overrides) -> AccessToken:
    fields = dict(
        home_account_id="uid.utid",
        environment=ENV,
        credential_type=CredentialType.ACCESS_TOKEN,
        client_id="mock_client_id",
        secret=f"token for {target}",
        realm="microsoft",
        target=target,
        cached_at=cached_at,
        expires_on=4600,
    )
    fields.update(overrides)
    return AccessToken(**fields)


class FailingRemoveStore(InMemoryStore):
    """Store whose removal of one key always fails."""

    def __init__(self, failing_key: str, initial=None):
        super().__init__(initial)
        self.failing_key = failing_key

    async def remove(self, key: str) -> None:
        if key == self.failing_key:
            raise OSError("disk unavailable")
        await super().remove(key)


class TestAccountLookup:
    async def test_get_account_by_exact_key(self, cache) -> None:
        account = await cache.get_account("uid.utid", ENV, "microsoft")

        assert account is not None
        assert account.username == "John Doe"
        assert account.local_account_id == "object1234"

    async def test_get_account_through_alias(self, cache) -> None:
        # Act - lookup made under another host for the same cloud
        account = await cache.get_account(
            "uid.utid", "login.windows.net", "microsoft", aliases=[ENV]
        )

        # Assert
        assert account is not None
        assert account.environment == ENV

    async def test_missing_account_returns_none(self, cache) -> None:
        assert await cache.get_account("other.utid", ENV, "microsoft") is None

    async def test_corrupt_row_fetched_by_key_is_fatal(self, seeded_store, cache) -> None:
        await seeded_store.set("uid.utid-login.microsoftonline.com-microsoft", "{broken")

        with pytest.raises(MalformedEntityError) as exc_info:
            await cache.get_account("uid.utid", ENV, "microsoft")

        assert exc_info.value.key == "uid.utid-login.microsoftonline.com-microsoft"

    async def test_get_accounts_filters_by_environment(self, cache) -> None:
        matching = await cache.get_accounts(CredentialFilter.for_environments([ENV]))
        other_cloud = await cache.get_accounts(
            CredentialFilter.for_environments(["login.chinacloudapi.cn"])
        )

        assert [a.home_account_id for a in matching] == ["uid.utid"]
        assert other_cloud == []


class TestAccessTokenLookup:
    async def test_subset_request_finds_token(self, cache) -> None:
        token = await cache.get_access_token(_filter("scope1", "SCOPE2"))

        assert token is not None
        assert token.target == "scope1 scope2 scope3"
        assert token.credential_type is CredentialType.ACCESS_TOKEN

    async def test_disjoint_scopes_find_nothing(self, cache) -> None:
        assert await cache.get_access_token(_filter("scope6")) is None

    async def test_scopes_spanning_two_tokens_find_nothing(self, cache) -> None:
        assert await cache.get_access_token(_filter("scope1", "scope4")) is None

    async def test_pop_lookup_only_returns_pop_rows(self, cache) -> None:
        # Act
        pop = await cache.get_access_token(_filter("scope1", key_id=POP_KID), "pop")
        bearer = await cache.get_access_token(_filter("scope1"), "Bearer")

        # Assert
        assert pop.credential_type is CredentialType.ACCESS_TOKEN_WITH_AUTH_SCHEME
        assert pop.secret == "a pop access token"
        assert bearer.credential_type is CredentialType.ACCESS_TOKEN

    async def test_token_inside_renewal_buffer_is_not_returned(self, cache) -> None:
        # 4301 + 300 >= 4600
        assert await cache.get_access_token(_filter("scope1"), now=4301) is None
        assert await cache.get_access_token(_filter("scope1"), now=4299) is not None

    async def test_zero_buffer_uses_exact_expiry(self, seeded_store) -> None:
        cache = CacheManager(seeded_store, renewal_buffer_seconds=0, clock=lambda: 4599)

        assert await cache.get_access_token(_filter("scope1")) is not None
        assert await cache.get_access_token(_filter("scope1"), now=4600) is None

    async def test_smallest_superset_is_preferred(self, store, clock) -> None:
        # Arrange
        cache = CacheManager(store, clock=clock)
        await cache.set_access_token(_access_token("a b c"))
        await cache.set_access_token(_access_token("a b"))

        # Act
        token = await cache.get_access_token(_filter("a"))

        # Assert
        assert token.target == "a b"

    async def test_newest_wins_between_equal_sized_supersets(self, store, clock) -> None:
        # Arrange
        cache = CacheManager(store, clock=clock)
        await cache.set_access_token(_access_token("a b", cached_at=900))
        await cache.set_access_token(_access_token("a c", cached_at=950))

        # Act
        token = await cache.get_access_token(_filter("a"))

        # Assert
        assert token.target == "a c"

    async def test_custom_selector_is_used(self, seeded_store, clock) -> None:
        picked = []

        def selector(candidates, requested):
            picked.append(requested)
            return None

        cache = CacheManager(seeded_store, selector=selector, clock=clock)

        assert await cache.get_access_token(_filter("scope1")) is None
        assert picked == [ScopeSet(["scope1"])]

    async def test_claims_bound_token_only_serves_same_claims(self, store, clock) -> None:
        # Arrange
        cache = CacheManager(store, clock=clock)
        await cache.set_access_token(_access_token("a", requested_claims_hash="hash1"))

        # Act & Assert
        assert await cache.get_access_token(_filter("a")) is None
        assert (
            await cache.get_access_token(_filter("a", requested_claims_hash="hash1"))
            is not None
        )

    async def test_write_overwrites_same_key(self, store, clock) -> None:
        cache = CacheManager(store, clock=clock)
        await cache.set_access_token(_access_token("a", secret="first"))
        await cache.set_access_token(_access_token("a", secret="second"))

        tokens = await cache.get_access_tokens()

        assert [t.secret for t in tokens] == ["second"]


class TestCorruptRows:
    async def test_enumeration_skips_corrupt_row(self, seeded_store, cache, caplog) -> None:
        # Arrange
        bad_key = "uid.utid-login.microsoftonline.com-AccessToken-mock_client_id-microsoft-x"
        await seeded_store.set(bad_key, "{not json")

        # Act
        with caplog.at_level(logging.WARNING, logger="tokensmith.services.cache"):
            tokens = await cache.get_access_tokens()

        # Assert
        assert len(tokens) == 3
        assert "Skipping corrupt cache row" in caplog.text

    async def test_row_under_wrong_key_is_skipped(self, seeded_store, cache) -> None:
        # Arrange - valid value, but its attributes belong to another key
        token = _access_token("scope9")
        await seeded_store.set(
            "uid.utid-login.microsoftonline.com-AccessToken-mock_client_id-microsoft-scope8",
            token.to_json(),
        )

        # Act
        tokens = await cache.get_access_tokens(_filter("scope9"))

        # Assert
        assert tokens == []

    async def test_wrong_credential_type_value_is_skipped(self, seeded_store, cache) -> None:
        await seeded_store.set(
            "uid.utid-login.microsoftonline.com-RefreshToken-bogus",
            '{"credentialType": "AccessToken"}',
        )

        tokens = await cache.get_refresh_tokens()

        assert len(tokens) == 4

    async def test_write_of_wrong_entity_type_is_rejected(self, cache) -> None:
        account = Account(
            home_account_id="uid.utid",
            environment=ENV,
            realm="r",
            local_account_id="",
            username="",
        )

        with pytest.raises(MalformedEntityError):
            await cache.set_access_token(account)

    async def test_corrupt_app_metadata_fetched_by_key_raises(self, seeded_store, cache) -> None:
        # Arrange
        await seeded_store.set("AppMetadata-login.microsoftonline.com-mock_client_id", "{oops")

        # Act & Assert
        with pytest.raises(MalformedEntityError):
            await cache.get_app_metadata("mock_client_id", [ENV])


class TestStoreFailures:
    async def test_store_errors_become_cache_io_errors(self) -> None:
        class BrokenStore(InMemoryStore):
            async def get_keys(self):
                raise OSError("connection reset")

        cache = CacheManager(BrokenStore())

        with pytest.raises(CacheIOError) as exc_info:
            await cache.get_accounts()

        assert exc_info.value.operation == "keys"
        assert isinstance(exc_info.value.__cause__, OSError)

    async def test_sync_store_is_supported(self) -> None:
        class DictStore:
            def __init__(self):
                self.data = {}

            def get(self, key):
                return self.data.get(key)

            def set(self, key, value):
                self.data[key] = value

            def remove(self, key):
                self.data.pop(key, None)

            def get_keys(self):
                return list(self.data)

        cache = CacheManager(DictStore(), clock=lambda: 1000)
        await cache.set_access_token(_access_token("a"))

        assert await cache.get_access_token(_filter("a")) is not None

    async def test_sync_store_runs_in_worker_thread(self) -> None:
        # Arrange
        class RecordingStore:
            def __init__(self):
                self.data = {}
                self.threads = set()

            def get(self, key):
                self.threads.add(threading.get_ident())
                return self.data.get(key)

            def set(self, key, value):
                self.threads.add(threading.get_ident())
                self.data[key] = value

            def remove(self, key):
                self.data.pop(key, None)

            def get_keys(self):
                self.threads.add(threading.get_ident())
                return list(self.data)

        store = RecordingStore()
        cache = CacheManager(store, clock=lambda: 1000)

        # Act
        await cache.set_access_token(_access_token("a"))
        await cache.get_access_token(_filter("a"))

        # Assert
        assert store.threads
        assert threading.get_ident() not in store.threads


class TestRefreshTokenResolution:
    async def test_family_member_gets_family_token(self, cache) -> None:
        candidates = await cache.get_refresh_tokens_for_client(
            "uid.utid", [ENV], "mock_client_id_1"
        )

        assert [rt.secret for rt in candidates] == ["a family refresh token"]

    async def test_sibling_without_app_metadata_tries_family_first(self, cache) -> None:
        candidates = await cache.get_refresh_tokens_for_client(
            "uid.utid", [ENV], "mock_client_id_2"
        )

        assert [rt.family_id for rt in candidates] == ["1"]

    async def test_unknown_membership_puts_family_before_own(self, cache) -> None:
        candidates = await cache.get_refresh_tokens_for_client(
            "uid.utid", [ENV], "mock_client_id"
        )

        assert [rt.secret for rt in candidates] == [
            "a family refresh token",
            "a refresh token",
        ]

    async def test_non_member_uses_only_own_token(self, cache) -> None:
        # Arrange
        await cache.set_app_metadata(AppMetadata(environment=ENV, client_id="mock_client_id"))

        # Act
        candidates = await cache.get_refresh_tokens_for_client(
            "uid.utid", [ENV], "mock_client_id"
        )

        # Assert
        assert [rt.secret for rt in candidates] == ["a refresh token"]

    async def test_no_tokens_for_unknown_account(self, cache) -> None:
        assert await cache.get_refresh_tokens_for_client("x.y", [ENV], "mock_client_id") == []


class TestRemoveAccount:
    async def test_removes_account_rows_and_keeps_others(self, seeded_store, cache) -> None:
        # Arrange
        await cache.set_account(
            Account(
                home_account_id="other.utid",
                environment=ENV,
                realm="microsoft",
                local_account_id="o",
                username="Jane",
            )
        )
        await cache.set_refresh_token(
            RefreshToken(
                home_account_id="other.utid",
                environment=ENV,
                credential_type=CredentialType.REFRESH_TOKEN,
                client_id="mock_client_id",
                secret="other rt",
            )
        )

        # Act
        await cache.remove_account("uid.utid")

        # Assert
        remaining = sorted(seeded_store.snapshot())
        assert remaining == [
            "AppMetadata-login.microsoftonline.com-mock_client_id_1",
            "other.utid-login.microsoftonline.com-RefreshToken-mock_client_id",
            "other.utid-login.microsoftonline.com-microsoft",
        ]

    async def test_removes_corrupt_rows_of_the_account(self, seeded_store, cache, caplog) -> None:
        # Arrange
        corrupt_key = "uid.utid-login.microsoftonline.com-AccessToken-mock_client_id-microsoft-x"
        other_key = "other.utid-login.microsoftonline.com-AccessToken-mock_client_id-microsoft-x"
        await seeded_store.set(corrupt_key, "{not json")
        await seeded_store.set(other_key, "{not json")

        # Act
        with caplog.at_level(logging.WARNING, logger="tokensmith.services.cache"):
            await cache.remove_account("uid.utid")

        # Assert
        remaining = seeded_store.snapshot()
        assert corrupt_key not in remaining
        assert other_key in remaining
        assert "Removing corrupt cache row" in caplog.text
        assert "uid.utid" not in caplog.text

    async def test_partial_failure_reports_every_failed_row(
        self, mock_cache_entities
    ) -> None:
        # Arrange
        failing_key = "uid.utid-login.microsoftonline.com-RefreshToken-mock_client_id"
        store = FailingRemoveStore(
            failing_key, {e.key(): e.to_json() for e in mock_cache_entities}
        )
        cache = CacheManager(store)

        # Act
        with pytest.raises(CacheRemovalError) as exc_info:
            await cache.remove_account("uid.utid")

        # Assert - the failing row stays, every other row is gone
        assert [key for key, _ in exc_info.value.failures] == [failing_key]
        assert sorted(store.snapshot()) == [
            "AppMetadata-login.microsoftonline.com-mock_client_id_1",
            failing_key,
        ]

    async def test_clear_empties_store(self, seeded_store, cache) -> None:
        await cache.clear()

        assert seeded_store.snapshot() == {}


class TestMasking:
    def test_uid_is_masked(self) -> None:
        assert mask_home_account_id("uid.utid") == "********.utid"
        assert mask_home_account_id("") == "<none>"
