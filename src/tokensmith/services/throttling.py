"""Server-requested request throttling.

After a 429, a 5xx, or any error response carrying ``Retry-After``, an
identical request (same client, authority, scopes, account, claims and
auth scheme) is refused locally until the back-off window passes.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from email.utils import parsedate_to_datetime

from tokensmith.models.cache_keys import CacheKey
from tokensmith.models.entities import ThrottlingEntry
from tokensmith.models.errors import CacheIOError, RequestThrottledError
from tokensmith.services.cache import CacheManager
from tokensmith.services.network import NetworkResponse

logger = logging.getLogger(__name__)

DEFAULT_THROTTLE_SECONDS = 60
MAX_THROTTLE_SECONDS = 3600


def parse_retry_after(value: str | None, now: float) -> int | None:
    """Seconds to wait from a ``Retry-After`` header (delta or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0, int(when.timestamp() - now))


class ThrottlingManager:
    """Records and enforces throttle windows in the token cache."""

    def __init__(self, cache: CacheManager, clock: Callable[[], float] = time.time):
        self.cache = cache
        self._clock = clock

    @staticmethod
    def request_key(
        client_id: str,
        authority: str,
        scopes: str,
        home_account_id: str = "",
        claims: str | None = None,
        auth_scheme: str = "",
    ) -> CacheKey:
        return CacheKey.for_throttling(
            client_id, authority, scopes, home_account_id, claims or "", auth_scheme
        )

    async def check(self, key: CacheKey) -> None:
        """Refuse the request if its throttle window is still open.

        Raises:
            RequestThrottledError: Carrying the stored server error and the
                seconds left in the window
        """
        entry = await self.cache.get_throttling_entry(key)
        if entry is None:
            return

        now = self._clock()
        if entry.throttle_time <= now:
            await self.cache.remove_throttling_entry(key)
            return

        retry_after = int(entry.throttle_time - now)
        logger.warning(f"Request throttled for another {retry_after}s")
        raise RequestThrottledError(
            f"Request throttled by the server; retry in {retry_after}s",
            retry_after=retry_after,
            error=entry.error,
            error_description=entry.error_message,
            error_codes=entry.error_codes,
            suberror=entry.suberror,
        )

    async def record(self, key: CacheKey, response: NetworkResponse) -> None:
        """Open a throttle window if ``response`` asks for one.

        A failure to persist the window is logged, never raised, so it
        cannot mask the server's own error.
        """
        retry_after_header = response.header("Retry-After")
        status = response.status_code
        is_failure = status < 200 or status >= 300
        if not (status == 429 or 500 <= status < 600 or (retry_after_header and is_failure)):
            return

        now = self._clock()
        wait = parse_retry_after(retry_after_header, now) or DEFAULT_THROTTLE_SECONDS
        wait = min(wait, MAX_THROTTLE_SECONDS)

        body = response.body
        entry = ThrottlingEntry(
            throttle_time=int(now) + wait,
            error=body.get("error"),
            error_codes=body.get("error_codes") or [],
            error_message=body.get("error_description"),
            suberror=body.get("suberror"),
        )
        try:
            await self.cache.set_throttling_entry(key, entry)
        except CacheIOError as e:
            logger.warning(f"Failed to record throttle window: {e}")
            return
        logger.info(f"Throttling identical requests for {wait}s (HTTP {status})")
