"""Token endpoint transport.

The pipeline posts through the ``NetworkClient`` protocol so applications
can plug in their own HTTP stack. ``HttpxNetworkClient`` is the default,
built on ``httpx.AsyncClient``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from tokensmith.models.errors import NetworkError, ServerResponseError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkResponse:
    """Status, headers and decoded JSON body of a token endpoint response."""

    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None


class NetworkClient(Protocol):
    async def post(
        self, url: str, body: str, headers: dict[str, str]
    ) -> NetworkResponse: ...

    async def close(self) -> None: ...


class HttpxNetworkClient:
    """Posts form-encoded token requests with httpx."""

    def __init__(self, timeout: float = 30.0):
        """Initialize the transport.

        Args:
            timeout: HTTP request timeout in seconds
        """
        self.timeout = timeout
        self._http_client = httpx.AsyncClient(timeout=timeout)

    async def post(
        self, url: str, body: str, headers: dict[str, str]
    ) -> NetworkResponse:
        """POST an already-encoded body and decode the JSON response.

        Both successful (200) and OAuth error (400+) responses carry JSON
        bodies (RFC 6749 Section 5); either one is returned as-is.

        Raises:
            NetworkError: If the endpoint cannot be reached
            ServerResponseError: If the response body is not a JSON object
        """
        logger.debug(f"POST {url.split('?')[0]}")

        try:
            response = await self._http_client.post(url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise NetworkError(f"HTTP error during token request: {e}") from e

        return self._parse_response(response)

    def _parse_response(self, response: httpx.Response) -> NetworkResponse:
        try:
            body = response.json()
        except ValueError as e:
            raise ServerResponseError(
                f"Token endpoint returned a non-JSON body (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from e

        if not isinstance(body, dict):
            raise ServerResponseError(
                f"Token endpoint returned a non-object JSON body "
                f"(HTTP {response.status_code})",
                status_code=response.status_code,
            )

        return NetworkResponse(
            status_code=response.status_code,
            body=body,
            headers=dict(response.headers),
        )

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()
