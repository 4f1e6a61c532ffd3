from datetime import datetime, timezone
from email.utils import format_datetime

import pytest

from tokensmith.models.errors import RequestThrottledError
from tokensmith.services.cache import CacheManager
from tokensmith.services.network import NetworkResponse
from tokensmith.services.throttling import (
    DEFAULT_THROTTLE_SECONDS,
    MAX_THROTTLE_SECONDS,
    ThrottlingManager,
    parse_retry_after,
)
from tokensmith.storage.memory import InMemoryStore


class TestThrottlingManager:
    def setup_method(self):
        # Arrange
        self.now = 1000
        self.store = InMemoryStore()
        self.throttling = ThrottlingManager(CacheManager(self.store), clock=lambda: self.now)
        self.key = ThrottlingManager.request_key(
            "mock_client_id",
            "https://login.microsoftonline.com/common",
            "scope1 openid profile offline_access",
        )

    async def _throttle_time(self) -> int | None:
        entry = await self.throttling.cache.get_throttling_entry(self.key)
        return entry.throttle_time if entry else None

    async def test_429_with_retry_after_opens_window(self) -> None:
        # Act
        await self.throttling.record(
            self.key,
            NetworkResponse(
                429, {"error": "temporarily_unavailable"}, {"Retry-After": "120"}
            ),
        )

        # Assert
        assert await self._throttle_time() == 1120
        with pytest.raises(RequestThrottledError) as exc_info:
            await self.throttling.check(self.key)
        assert exc_info.value.retry_after == 120
        assert exc_info.value.error == "temporarily_unavailable"

    async def test_server_error_without_header_uses_default(self) -> None:
        await self.throttling.record(self.key, NetworkResponse(503, {}))

        assert await self._throttle_time() == 1000 + DEFAULT_THROTTLE_SECONDS

    async def test_long_retry_after_is_clamped(self) -> None:
        await self.throttling.record(
            self.key, NetworkResponse(429, {}, {"Retry-After": "86400"})
        )

        assert await self._throttle_time() == 1000 + MAX_THROTTLE_SECONDS

    async def test_client_error_with_retry_after_opens_window(self) -> None:
        await self.throttling.record(
            self.key, NetworkResponse(400, {"error": "x"}, {"Retry-After": "5"})
        )

        assert await self._throttle_time() == 1005

    @pytest.mark.parametrize(
        "response",
        [
            NetworkResponse(200, {"access_token": "t"}, {"Retry-After": "5"}),
            NetworkResponse(400, {"error": "invalid_grant"}),
        ],
    )
    async def test_other_responses_do_not_throttle(self, response) -> None:
        await self.throttling.record(self.key, response)

        assert await self._throttle_time() is None

    async def test_expired_window_is_removed_on_check(self) -> None:
        # Arrange
        await self.throttling.record(self.key, NetworkResponse(503, {}))
        self.now = 1000 + DEFAULT_THROTTLE_SECONDS

        # Act
        await self.throttling.check(self.key)

        # Assert
        assert self.store.snapshot() == {}

    async def test_different_request_is_not_throttled(self) -> None:
        await self.throttling.record(self.key, NetworkResponse(503, {}))
        other = ThrottlingManager.request_key(
            "mock_client_id", "https://login.microsoftonline.com/common", "scope2"
        )

        await self.throttling.check(other)

    async def test_key_is_stored_under_throttling_prefix(self) -> None:
        await self.throttling.record(self.key, NetworkResponse(503, {}))

        assert list(self.store.snapshot()) == [
            "throttling.mock_client_id.https://login.microsoftonline.com/common."
            "scope1 openid profile offline_access..."
        ]


class TestParseRetryAfter:
    def test_delta_seconds(self) -> None:
        assert parse_retry_after("30", now=0) == 30

    def test_http_date(self) -> None:
        when = datetime(2030, 1, 1, tzinfo=timezone.utc)

        assert parse_retry_after(format_datetime(when, usegmt=True), when.timestamp() - 90) == 90

    def test_garbage_is_ignored(self) -> None:
        assert parse_retry_after("soon", now=0) is None
        assert parse_retry_after(None, now=0) is None
