"""Exception hierarchy for token acquisition and cache errors.

Provides specific exception types for different failure modes to enable
precise error handling and recovery strategies. Every error carries the
structured context (field, key, entity, server error code) a caller needs
to log it without the library doing its own formatting.
"""

from __future__ import annotations


class TokenClientError(Exception):
    """Base exception for all token client errors."""

    pass


class ClientConfigurationError(TokenClientError):
    """Raised when a request or the client setup is missing required fields.

    Never retried. Raised before any network call is attempted.
    """

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.field = field


class ServerResponseError(TokenClientError):
    """Raised when the token endpoint returns an error or a malformed body.

    The server's error code and description are preserved verbatim.
    """

    def __init__(
        self,
        message: str,
        *,
        error: str | None = None,
        error_description: str | None = None,
        error_codes: list[int] | None = None,
        suberror: str | None = None,
        status_code: int | None = None,
        correlation_id: str | None = None,
    ):
        super().__init__(message)
        self.error = error
        self.error_description = error_description
        self.error_codes = error_codes or []
        self.suberror = suberror
        self.status_code = status_code
        self.correlation_id = correlation_id

    def is_invalid_grant(self) -> bool:
        return self.error == "invalid_grant"


class RequestThrottledError(ServerResponseError):
    """Raised when an identical request is still inside its throttle window."""

    def __init__(self, message: str, *, retry_after: int, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class MalformedEntityError(TokenClientError):
    """Raised when a cache row fails validation.

    Isolated to that row during enumeration; fatal only when the row was
    fetched by its exact key.
    """

    def __init__(
        self,
        message: str,
        *,
        key: str | None = None,
        entity: str | None = None,
        field: str | None = None,
    ):
        super().__init__(message)
        self.key = key
        self.entity = entity
        self.field = field


class CacheIOError(TokenClientError):
    """Raised when the underlying key-value store operation fails."""

    def __init__(
        self, message: str, *, key: str | None = None, operation: str | None = None
    ):
        super().__init__(message)
        self.key = key
        self.operation = operation


class CacheRemovalError(CacheIOError):
    """Raised when some rows of a multi-row removal could not be deleted.

    Rows that were removed stay removed; ``failures`` lists the rest.
    """

    def __init__(self, message: str, *, failures: list[tuple[str, Exception]]):
        super().__init__(message, operation="remove")
        self.failures = failures


class InvalidTokenError(TokenClientError):
    """Raised when an ID token or client_info blob cannot be decoded."""

    def __init__(self, message: str, *, token_kind: str | None = None):
        super().__init__(message)
        self.token_kind = token_kind


class NetworkError(TokenClientError):
    """Raised when the token endpoint could not be reached."""

    pass


class NoTokensFoundError(TokenClientError):
    """Raised by silent acquisition when no usable token is cached.

    The caller has to fall back to a credential grant.
    """

    pass
