"""Token acquisition client.

Coordinates request construction, throttling, the token endpoint call,
response validation and cache write-back behind a small interface:
``acquire_token`` for credential grants, ``acquire_token_silent`` for
accounts that already signed in, plus account enumeration and sign-out.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Callable

from tokensmith.config import ClientConfig, ClientSettings
from tokensmith.models.authority import Authority, AuthorityMetadata, StaticAuthority
from tokensmith.models.entities import Account, CredentialFilter, RefreshToken
from tokensmith.models.errors import (
    InvalidTokenError,
    NoTokensFoundError,
    ServerResponseError,
)
from tokensmith.models.requests import (
    BaseTokenRequest,
    ClientCredentialsGrantRequest,
    GrantRequest,
    SilentRequest,
)
from tokensmith.models.tokens import Acquisition, AcquisitionState, AuthenticationResult
from tokensmith.primitives.crypto import CryptoProvider, DefaultCrypto
from tokensmith.primitives.scopes import ScopeSet
from tokensmith.services.cache import CacheManager, mask_home_account_id
from tokensmith.services.network import HttpxNetworkClient, NetworkClient
from tokensmith.services.request_builder import TokenRequestBuilder
from tokensmith.services.response import ResponseHandler, requested_claims_hash
from tokensmith.services.throttling import ThrottlingManager
from tokensmith.storage.file import JsonFileStore
from tokensmith.storage.memory import InMemoryStore

logger = logging.getLogger(__name__)

# Tenant placeholders whose tokens are cached under the user's home tenant.
MULTI_TENANT_ALIASES = frozenset({"common", "organizations", "consumers"})

CLIENT_MISMATCH = "client_mismatch"


class TokenClient:
    """Acquires tokens for one client application against one authority.

    Example:
        client = TokenClient.from_settings(ClientSettings(client_id="..."))
        result = await client.acquire_token(
            PasswordGrantRequest(scopes=["User.Read"], username=..., password=...)
        )
        result = await client.acquire_token_silent(
            SilentRequest(scopes=["User.Read"], account=result.account)
        )
    """

    def __init__(
        self,
        config: ClientConfig,
        authority: Authority,
        cache: CacheManager,
        *,
        crypto: CryptoProvider | None = None,
        network: NetworkClient | None = None,
        clock: Callable[[], float] = time.time,
        timeout: float = 30.0,
    ):
        """Initialize the token client.

        Args:
            config: Client identity and request options
            authority: Authority requests are sent to unless a request
                names another one
            cache: Token cache
            crypto: Encoding and hashing provider
            network: Token endpoint transport; httpx when omitted
            clock: Returns the current epoch time in seconds
            timeout: HTTP timeout for the default transport
        """
        self.config = config
        self.authority = authority
        self.cache = cache
        self.crypto = crypto or DefaultCrypto()
        self.network = network or HttpxNetworkClient(timeout=timeout)
        self._clock = clock

        self.request_builder = TokenRequestBuilder(config, self.crypto)
        self.response_handler = ResponseHandler(config, cache, self.crypto, clock)
        self.throttling = ThrottlingManager(cache, clock)

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> TokenClient:
        """Wire a client, its authority, store and transport from settings."""
        authority = StaticAuthority(
            settings.authority, extra_aliases=frozenset(settings.authority_aliases)
        )
        if settings.token_endpoint or settings.issuer:
            authority = dataclasses.replace(
                authority,
                metadata=AuthorityMetadata(
                    token_endpoint=settings.token_endpoint
                    or authority.get_token_endpoint(),
                    issuer=settings.issuer,
                ),
            )

        store = JsonFileStore(settings.cache_path) if settings.cache_path else InMemoryStore()
        cache = CacheManager(
            store, renewal_buffer_seconds=settings.access_token_renewal_buffer_seconds
        )
        return cls(
            settings.to_client_config(),
            authority,
            cache,
            timeout=settings.http_timeout,
        )

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    async def acquire_token(self, request: GrantRequest) -> AuthenticationResult:
        """Redeem a credential grant at the token endpoint.

        Client-credentials requests are answered from the cache when a valid
        app token exists, unless ``force_refresh`` is set.

        Raises:
            ClientConfigurationError: Missing request or client fields
            RequestThrottledError: Identical request still throttled
            ServerResponseError: Error or malformed response from the server
            InvalidTokenError: Undecodable ID token or client_info
            NetworkError: Token endpoint unreachable
        """
        acquisition = Acquisition(request.correlation_id)
        try:
            request.validate(self.config)
            authority = self._authority_for(request)

            if (
                isinstance(request, ClientCredentialsGrantRequest)
                and not request.force_refresh
            ):
                cached = await self._find_cached(request, authority, account=None)
                if cached is not None:
                    return self._returned(cached, acquisition)

            return await self._execute(request, authority, acquisition)
        except Exception:
            acquisition.fail()
            raise

    async def acquire_token_silent(self, request: SilentRequest) -> AuthenticationResult:
        """Acquire a token for ``request.account`` without user interaction.

        Raises:
            NoTokensFoundError: No usable access or refresh token is cached
            ServerResponseError: The refresh token was rejected; an
                ``invalid_grant`` rejection also removes it from the cache
        """
        request.validate()
        authority = self._authority_for(request)
        account = request.account
        acquisition = Acquisition(request.correlation_id)

        if not request.force_refresh:
            try:
                cached = await self._find_cached(request, authority, account=account)
            except Exception:
                acquisition.fail()
                raise
            if cached is not None:
                return self._returned(cached, acquisition)

        candidates = await self.cache.get_refresh_tokens_for_client(
            account.home_account_id, authority.get_aliases(), self.config.client_id
        )
        if not candidates:
            acquisition.fail()
            raise NoTokensFoundError(
                f"No refresh token cached for account "
                f"{mask_home_account_id(account.home_account_id)}"
            )

        last_error: ServerResponseError | None = None
        for refresh_token in candidates:
            if last_error is not None and refresh_token.family_id:
                continue
            if acquisition.state is AcquisitionState.FAILED:
                acquisition = Acquisition(request.correlation_id)
            try:
                return await self._execute(
                    request.to_refresh_request(refresh_token.secret),
                    authority,
                    acquisition,
                    account=account,
                )
            except ServerResponseError as e:
                acquisition.fail()
                if self._is_foreign_family_token(e, refresh_token):
                    logger.info(
                        f"Family refresh token rejected for client "
                        f"{self.config.client_id}; falling back to its own token"
                    )
                    last_error = e
                    continue
                if e.is_invalid_grant():
                    await self._forget_refresh_token(refresh_token)
                raise
            except Exception:
                acquisition.fail()
                raise

        raise last_error or NoTokensFoundError("No usable refresh token")

    async def _execute(
        self,
        request: GrantRequest,
        authority: Authority,
        acquisition: Acquisition,
        *,
        account: Account | None = None,
    ) -> AuthenticationResult:
        home_account_id = account.home_account_id if account else ""
        request_scopes = self.request_builder.request_scopes(request)
        throttle_key = ThrottlingManager.request_key(
            self.config.client_id,
            authority.canonical_authority,
            request_scopes.to_string(),
            home_account_id,
            request.claims,
            request.auth_scheme,
        )
        await self.throttling.check(throttle_key)

        url = self.request_builder.build_url(authority.get_token_endpoint(), request)
        body = self.request_builder.build_body(request)
        headers = self.request_builder.build_headers(request)

        acquisition.advance(AcquisitionState.REQUESTED)
        logger.debug(
            f"Requesting {request.grant_type.value} token "
            f"(correlation_id={request.correlation_id})"
        )
        network_response = await self.network.post(url, body, headers)
        await self.throttling.record(throttle_key, network_response)

        validated = self.response_handler.validate(
            network_response, request, request_scopes, authority, account=account
        )
        acquisition.advance(AcquisitionState.VALIDATED)

        record = self.response_handler.build_cache_record(validated, request, authority)
        warnings = await self.response_handler.save(record)
        acquisition.advance(AcquisitionState.CACHED)

        result = self.response_handler.to_result(validated, record, request, warnings)
        acquisition.advance(AcquisitionState.RETURNED)

        logger.info(
            f"Acquired {request.grant_type.value} token for "
            f"{mask_home_account_id(validated.home_account_id)}"
            + (f" with {len(warnings)} cache write warnings" if warnings else "")
        )
        return dataclasses.replace(result, state_history=tuple(acquisition.history))

    # ------------------------------------------------------------------
    # Cache lookups
    # ------------------------------------------------------------------

    async def _find_cached(
        self,
        request: BaseTokenRequest,
        authority: Authority,
        account: Account | None,
    ) -> AuthenticationResult | None:
        aliases = authority.get_aliases()
        home_account_id = account.home_account_id if account else ""
        realm = authority.tenant
        if account and realm.lower() in MULTI_TENANT_ALIASES:
            realm = account.realm

        requested = ScopeSet(request.scopes)
        target = requested.without_oidc_defaults() or requested
        access_token = await self.cache.get_access_token(
            CredentialFilter.for_environments(
                aliases,
                home_account_id=home_account_id,
                client_id=self.config.client_id,
                realm=realm,
                target=target,
                key_id=request.key_id if request.is_pop else None,
                requested_claims_hash=requested_claims_hash(self.crypto, request.claims),
            ),
            request.auth_scheme,
        )
        if access_token is None:
            return None

        id_token_raw = ""
        id_token_claims: dict = {}
        if account is not None:
            id_token = await self.cache.get_id_token(
                CredentialFilter.for_environments(
                    aliases,
                    home_account_id=home_account_id,
                    client_id=self.config.client_id,
                    realm=realm,
                )
            )
            if id_token is not None:
                id_token_raw = id_token.secret
                try:
                    id_token_claims = self.crypto.extract_token_claims(id_token.secret)
                except InvalidTokenError as e:
                    logger.warning(f"Cached ID token could not be decoded: {e}")

        logger.info(
            f"Access token served from cache for {mask_home_account_id(home_account_id)}"
        )
        return AuthenticationResult(
            access_token=access_token.secret,
            scopes=access_token.scopes.as_list(),
            expires_on=access_token.expires_on,
            extended_expires_on=access_token.extended_expires_on
            or access_token.expires_on,
            refresh_on=access_token.refresh_on,
            id_token=id_token_raw,
            id_token_claims=id_token_claims,
            account=account,
            token_type=access_token.token_type,
            state=request.state,
            correlation_id=request.correlation_id,
            from_cache=True,
        )

    def _returned(
        self, result: AuthenticationResult, acquisition: Acquisition
    ) -> AuthenticationResult:
        acquisition.advance(AcquisitionState.RETURNED)
        return dataclasses.replace(result, state_history=tuple(acquisition.history))

    @staticmethod
    def _is_foreign_family_token(
        error: ServerResponseError, refresh_token: RefreshToken
    ) -> bool:
        return (
            bool(refresh_token.family_id)
            and error.is_invalid_grant()
            and error.suberror == CLIENT_MISMATCH
        )

    async def _forget_refresh_token(self, refresh_token: RefreshToken) -> None:
        logger.warning(
            f"Refresh token for {mask_home_account_id(refresh_token.home_account_id)} "
            f"was rejected as invalid_grant; removing it"
        )
        await self.cache.remove_credential(refresh_token)

    def _authority_for(self, request: BaseTokenRequest) -> Authority:
        if not request.authority:
            return self.authority
        authority = StaticAuthority(request.authority)
        if authority.canonical_authority == self.authority.canonical_authority:
            return self.authority
        return authority

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_accounts(self) -> list[Account]:
        """Signed-in accounts cached for this client's authority."""
        return await self.cache.get_accounts(
            CredentialFilter.for_environments(self.authority.get_aliases())
        )

    async def get_account(self, home_account_id: str) -> Account | None:
        accounts = await self.cache.get_accounts(
            CredentialFilter.for_environments(
                self.authority.get_aliases(), home_account_id=home_account_id
            )
        )
        return accounts[0] if accounts else None

    async def remove_account(self, account: Account | str) -> None:
        """Sign ``account`` out: drop it and every token it owns.

        Raises:
            CacheRemovalError: If some rows could not be removed
        """
        home_account_id = account if isinstance(account, str) else account.home_account_id
        await self.cache.remove_account(home_account_id)

    async def close(self) -> None:
        """Close the transport."""
        await self.network.close()

