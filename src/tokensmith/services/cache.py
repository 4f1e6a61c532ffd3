"""Token cache manager.

Typed accessors over an injected ``KeyValueStore``: builds canonical keys,
enumerates and filters rows, evaluates access token expiry, resolves
family refresh tokens and removes whole accounts.

Corrupt rows are isolated: enumeration skips (and logs) a row that does not
decode, so one bad entry never disables the rest of the cache. Store
failures are never skipped; they surface as ``CacheIOError``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from typing import TypeVar

from tokensmith.models.cache_keys import (
    KEY_SEPARATOR,
    CacheKey,
    CredentialType,
    EntityKind,
)
from tokensmith.models.entities import (
    TOKEN_TYPE_BEARER,
    AccessToken,
    Account,
    AppMetadata,
    CacheEntity,
    CredentialFilter,
    IdToken,
    RefreshToken,
    ThrottlingEntry,
)
from tokensmith.models.errors import (
    CacheIOError,
    CacheRemovalError,
    MalformedEntityError,
)
from tokensmith.primitives.scopes import ScopeSet
from tokensmith.storage.base import KeyValueStore, call_store

logger = logging.getLogger(__name__)

DEFAULT_RENEWAL_BUFFER_SECONDS = 300

E = TypeVar("E", bound=CacheEntity)

AccessTokenSelector = Callable[[Sequence[AccessToken], ScopeSet], AccessToken | None]

_CREDENTIAL_MODELS: dict[CredentialType, type[CacheEntity]] = {
    credential_type: model
    for model in (IdToken, AccessToken, RefreshToken)
    for credential_type in model.allowed_credential_types
}


def smallest_superset_then_newest(
    candidates: Sequence[AccessToken], requested: ScopeSet
) -> AccessToken | None:
    """Prefer the narrowest token covering ``requested``; newest on a tie.

    Candidates are already known to be supersets of ``requested``.
    """
    if not candidates:
        return None
    return min(candidates, key=lambda at: (len(at.scopes), -at.cached_at))


def mask_home_account_id(home_account_id: str | None) -> str:
    """Hide the per-user part of a home account id for logging."""
    if not home_account_id:
        return "<none>"
    parts = home_account_id.split(".")
    parts[0] = "********"
    return ".".join(parts)


class CacheManager:
    """Reads and writes cache entities through a key-value store.

    One instance per store. The instance holds no cached state of its own;
    every call goes to the store, so several managers (or processes) may
    share one store.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        renewal_buffer_seconds: int = DEFAULT_RENEWAL_BUFFER_SECONDS,
        selector: AccessTokenSelector = smallest_superset_then_newest,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the cache manager.

        Args:
            store: Backing key-value store (sync or async)
            renewal_buffer_seconds: Access tokens expiring within this many
                seconds are treated as already expired
            selector: Tie-break policy when several access tokens match
            clock: Returns the current epoch time in seconds
        """
        self.store = store
        self.renewal_buffer_seconds = renewal_buffer_seconds
        self.selector = selector
        self._clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set_account(self, account: Account) -> None:
        await self._write(account, Account)

    async def set_id_token(self, id_token: IdToken) -> None:
        await self._write(id_token, IdToken)

    async def set_access_token(self, access_token: AccessToken) -> None:
        await self._write(access_token, AccessToken)

    async def set_refresh_token(self, refresh_token: RefreshToken) -> None:
        await self._write(refresh_token, RefreshToken)

    async def set_app_metadata(self, app_metadata: AppMetadata) -> None:
        await self._write(app_metadata, AppMetadata)

    async def set_throttling_entry(self, key: CacheKey, entry: ThrottlingEntry) -> None:
        await self._store_set(key.serialize(), entry.to_json())

    async def _write(self, entity: CacheEntity, expected: type[CacheEntity]) -> None:
        if not isinstance(entity, expected):
            raise MalformedEntityError(
                f"Expected {expected.entity_name}, got {type(entity).__name__}",
                entity=expected.entity_name,
            )
        key = entity.key()
        await self._store_set(key, entity.to_json())
        logger.debug(f"Cached {entity.entity_name} at {self._loggable_key(entity)}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_account(
        self,
        home_account_id: str,
        environment: str,
        realm: str,
        *,
        aliases: Iterable[str] = (),
    ) -> Account | None:
        """Fetch one account by exact key, trying each environment alias.

        Raises:
            MalformedEntityError: If the stored row exists but is corrupt
        """
        environments = [environment, *(a for a in aliases if a != environment)]
        for env in environments:
            key = CacheKey.for_account(home_account_id, env, realm).serialize()
            account = await self._read_exact(key, Account)
            if account is not None:
                return account
        return None

    async def get_accounts(self, flt: CredentialFilter | None = None) -> list[Account]:
        flt = flt or CredentialFilter()
        return [
            account
            async for account in self._enumerate(EntityKind.ACCOUNT, Account)
            if account.matches(flt)
        ]

    async def get_id_tokens(self, flt: CredentialFilter | None = None) -> list[IdToken]:
        flt = flt or CredentialFilter()
        return [
            token
            async for token in self._enumerate(
                EntityKind.CREDENTIAL, IdToken, IdToken.allowed_credential_types
            )
            if token.matches(flt)
        ]

    async def get_id_token(self, flt: CredentialFilter) -> IdToken | None:
        tokens = await self.get_id_tokens(flt)
        if len(tokens) > 1:
            logger.debug(f"{len(tokens)} ID tokens match, using the first")
        return tokens[0] if tokens else None

    async def get_access_tokens(
        self, flt: CredentialFilter | None = None
    ) -> list[AccessToken]:
        """All access tokens matching ``flt``, expired ones included."""
        flt = flt or CredentialFilter()
        credential_types = (
            (flt.credential_type,)
            if flt.credential_type
            else AccessToken.allowed_credential_types
        )
        return [
            token
            async for token in self._enumerate(
                EntityKind.CREDENTIAL, AccessToken, credential_types
            )
            if token.matches(flt)
        ]

    async def get_access_token(
        self,
        flt: CredentialFilter,
        auth_scheme: str = TOKEN_TYPE_BEARER,
        *,
        now: float | None = None,
    ) -> AccessToken | None:
        """Best non-expired access token for ``flt``.

        Rows expiring within the renewal buffer are discarded before
        matching. A request without a claims hash only matches rows without
        one. "No result" and "found but expired" are indistinguishable.
        """
        credential_type = (
            CredentialType.ACCESS_TOKEN
            if auth_scheme.lower() == TOKEN_TYPE_BEARER.lower()
            else CredentialType.ACCESS_TOKEN_WITH_AUTH_SCHEME
        )
        now = self._clock() if now is None else now
        candidates = [
            token
            for token in await self.get_access_tokens(flt)
            if token.credential_type == credential_type
            and token.requested_claims_hash == flt.requested_claims_hash
            and not token.is_expired(now, self.renewal_buffer_seconds)
        ]
        return self.selector(candidates, flt.target or ScopeSet())

    async def get_refresh_tokens(
        self, flt: CredentialFilter | None = None
    ) -> list[RefreshToken]:
        flt = flt or CredentialFilter()
        return [
            token
            async for token in self._enumerate(
                EntityKind.CREDENTIAL, RefreshToken, RefreshToken.allowed_credential_types
            )
            if token.matches(flt)
        ]

    async def get_app_metadata(
        self, client_id: str, environments: Iterable[str]
    ) -> AppMetadata | None:
        """App metadata of ``client_id`` under the first alias that has one.

        Raises:
            MalformedEntityError: If the row under an exact key is corrupt
        """
        for env in environments:
            key = CacheKey.for_app_metadata(env, client_id).serialize()
            app_metadata = await self._read_exact(key, AppMetadata)
            if app_metadata is not None:
                return app_metadata
        return None

    async def get_refresh_tokens_for_client(
        self, home_account_id: str, environments: Iterable[str], client_id: str
    ) -> list[RefreshToken]:
        """Refresh tokens usable by ``client_id``, most preferred first.

        - App metadata names a family: that family's token, then our own.
        - App metadata without a family: only our own token.
        - No app metadata yet (membership unknown): any family token, then
          our own. A family token that turns out not to be ours is rejected
          by the server, and the caller falls through to the next one.
        """
        environments = frozenset(env.lower() for env in environments)
        app_metadata = await self.get_app_metadata(client_id, environments)
        base = dict(
            home_account_id=home_account_id,
            environments=environments,
            credential_type=CredentialType.REFRESH_TOKEN,
        )

        family: list[RefreshToken] = []
        if app_metadata is None:
            family = [
                rt
                for rt in await self.get_refresh_tokens(CredentialFilter(**base))
                if rt.family_id
            ]
        elif app_metadata.family_id:
            family = await self.get_refresh_tokens(
                CredentialFilter(family_id=app_metadata.family_id, **base)
            )

        own = await self.get_refresh_tokens(CredentialFilter(client_id=client_id, **base))
        family_keys = {rt.key() for rt in family}
        candidates = family + [rt for rt in own if rt.key() not in family_keys]

        logger.debug(
            f"Found {len(candidates)} refresh tokens for client {client_id} "
            f"and account {mask_home_account_id(home_account_id)} "
            f"({len(family)} from a family)"
        )
        return candidates

    async def get_throttling_entry(self, key: CacheKey) -> ThrottlingEntry | None:
        serialized = key.serialize()
        raw = await self._store_get(serialized)
        if raw is None:
            return None
        try:
            return ThrottlingEntry.from_json(raw, key=serialized)
        except MalformedEntityError as e:
            logger.warning(f"Ignoring corrupt throttling entry at {serialized}: {e}")
            return None

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def remove_credential(self, credential: IdToken | AccessToken | RefreshToken) -> None:
        await self._store_remove(credential.key())

    async def remove_throttling_entry(self, key: CacheKey) -> None:
        await self._store_remove(key.serialize())

    async def remove_account(self, home_account_id: str) -> None:
        """Remove an account and every credential sharing its home account id.

        Covers all environments, realms and clients. Every row is attempted
        even when some deletions fail.

        Raises:
            CacheRemovalError: If any row could not be removed; rows already
                removed stay removed
        """
        keys = await self._account_keys(home_account_id)

        failures: list[tuple[str, Exception]] = []
        for key in keys:
            try:
                await self._store_remove(key)
            except CacheIOError as e:
                failures.append((key, e))

        masked = mask_home_account_id(home_account_id)
        if failures:
            logger.error(
                f"Removed {len(keys) - len(failures)} of {len(keys)} rows for "
                f"account {masked}"
            )
            raise CacheRemovalError(
                f"Failed to remove {len(failures)} of {len(keys)} rows for "
                f"account {masked}",
                failures=failures,
            )
        logger.info(f"Removed account {masked} and {len(keys)} cache rows")

    async def clear(self) -> None:
        for key in await self._store_keys():
            await self._store_remove(key)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _account_keys(self, home_account_id: str) -> list[str]:
        """Keys of every account row and credential owned by ``home_account_id``.

        A row that no longer decodes is attributed by the owner part of its
        key, which starts with the home account id.
        """
        owner_prefix = f"{home_account_id}{KEY_SEPARATOR}"
        keys: list[str] = []
        for key in await self._store_keys():
            parsed = CacheKey.parse(key)
            if parsed.kind is EntityKind.ACCOUNT:
                model = Account
            elif parsed.kind is EntityKind.CREDENTIAL:
                model = _CREDENTIAL_MODELS[parsed.credential_type]
            else:
                continue

            raw = await self._store_get(key)
            if raw is None:
                continue
            try:
                owned = model.from_json(raw, key=key).home_account_id == home_account_id
            except MalformedEntityError:
                owned = parsed.owner.startswith(owner_prefix)
                if owned:
                    logger.warning(
                        f"Removing corrupt cache row of account "
                        f"{mask_home_account_id(home_account_id)}"
                    )
            if owned:
                keys.append(key)
        return keys

    async def _read_exact(self, key: str, model: type[E]) -> E | None:
        raw = await self._store_get(key)
        if raw is None:
            return None
        entity = model.from_json(raw, key=key)
        self._check_key(entity, key)
        return entity

    async def _enumerate(
        self,
        kind: EntityKind,
        model: type[E],
        credential_types: Iterable[CredentialType] = (),
    ):
        credential_types = tuple(credential_types)
        for key in await self._store_keys():
            parsed = CacheKey.parse(key)
            if parsed.kind is not kind:
                continue
            if credential_types and parsed.credential_type not in credential_types:
                continue

            raw = await self._store_get(key)
            if raw is None:
                continue  # Removed since the key snapshot was taken
            try:
                entity = model.from_json(raw, key=key)
                self._check_key(entity, key)
            except MalformedEntityError as e:
                logger.warning(f"Skipping corrupt cache row {key}: {e}")
                continue
            yield entity

    @staticmethod
    def _check_key(entity: CacheEntity, key: str) -> None:
        expected = entity.key()
        if expected != key:
            raise MalformedEntityError(
                f"{entity.entity_name} stored under {key!r} belongs at {expected!r}",
                key=key,
                entity=entity.entity_name,
            )

    @staticmethod
    def _loggable_key(entity: CacheEntity) -> str:
        home_account_id = getattr(entity, "home_account_id", None)
        key = entity.key()
        if home_account_id:
            key = key.replace(home_account_id, mask_home_account_id(home_account_id), 1)
        return key

    async def _store_get(self, key: str) -> str | None:
        try:
            return await call_store(self.store.get, key)
        except CacheIOError:
            raise
        except Exception as e:
            raise CacheIOError(f"Failed to read {key}: {e}", key=key, operation="get") from e

    async def _store_set(self, key: str, value: str) -> None:
        try:
            await call_store(self.store.set, key, value)
        except CacheIOError:
            raise
        except Exception as e:
            raise CacheIOError(f"Failed to write {key}: {e}", key=key, operation="set") from e

    async def _store_remove(self, key: str) -> None:
        try:
            await call_store(self.store.remove, key)
        except CacheIOError:
            raise
        except Exception as e:
            raise CacheIOError(
                f"Failed to remove {key}: {e}", key=key, operation="remove"
            ) from e

    async def _store_keys(self) -> list[str]:
        try:
            return list(await call_store(self.store.get_keys))
        except CacheIOError:
            raise
        except Exception as e:
            raise CacheIOError(f"Failed to list keys: {e}", operation="keys") from e
