"""
Custom error classes for BuildHub Analytics.
Structured error handling with error codes across the aggregator.

Hierarchy:
    AnalyticsError
    ├── APIError
    │   ├── FetchError
    │   │   ├── APITimeoutError
    │   │   ├── APIRateLimitError
    │   │   └── CircuitOpenError
    │   └── APIAuthError
    │       └── AuthExpiredError
    ├── ConfigurationError
    ├── DateRangeError
    └── CacheError

FetchError and its subclasses are local to one period: the orchestrator
downgrades them to zero placeholders. Everything else under APIError,
plus ConfigurationError, fails the request.
"""
from typing import Optional


class AnalyticsError(Exception):
    """Base exception for all BuildHub Analytics errors."""

    def __init__(self, message: str, code: str = "UNKNOWN", details: Optional[dict] = None):
        self.code = code
        self.details = details or {}
        super().__init__(f"[{code}] {message}")


# --- API Errors ---

class APIError(AnalyticsError):
    """Base class for external API errors."""

    def __init__(self, message: str, code: str = "API_ERROR",
                 status_code: Optional[int] = None, source: Optional[str] = None, **kwargs):
        self.status_code = status_code
        self.source = source
        details = {"status_code": status_code, "source": source, **kwargs}
        super().__init__(message, code=code, details=details)


class FetchError(APIError):
    """A single external call failed. Recoverable at the period level."""

    def __init__(self, message: str, source: Optional[str] = None,
                 status_code: Optional[int] = None, code: str = "FETCH_FAILED", **kwargs):
        super().__init__(
            message, code=code, status_code=status_code, source=source, **kwargs,
        )


class APITimeoutError(FetchError):
    """Request timed out."""

    def __init__(self, source: str, timeout: float):
        super().__init__(
            f"{source} request timed out after {timeout}s",
            source=source, code="API_TIMEOUT", timeout=timeout,
        )


class APIRateLimitError(FetchError):
    """Rate limit exceeded."""

    def __init__(self, source: str, retry_after: Optional[int] = None):
        msg = f"{source} rate limit exceeded"
        if retry_after:
            msg += f" (retry after {retry_after}s)"
        super().__init__(
            msg, source=source, status_code=429, code="API_RATE_LIMIT",
            retry_after=retry_after,
        )


class CircuitOpenError(FetchError):
    """Circuit breaker is open — requests blocked."""

    def __init__(self, source: str, failures: int, reset_time: float):
        super().__init__(
            f"Circuit open for '{source}' after {failures} failures. "
            f"Resets in {reset_time:.0f}s.",
            source=source, code="CIRCUIT_OPEN",
        )


class APIAuthError(APIError):
    """Credentials were rejected by the external system."""

    def __init__(self, source: str, status_code: int = 401, message: Optional[str] = None):
        super().__init__(
            message or f"Authentication failed for {source}",
            code="API_AUTH_FAILED", status_code=status_code, source=source,
        )


class AuthExpiredError(APIAuthError):
    """Stored OAuth token could not be refreshed."""

    def __init__(self, source: str, reason: Optional[str] = None):
        msg = f"{source} token refresh failed"
        if reason:
            msg += f": {reason}"
        super().__init__(source, status_code=401, message=msg)
        self.code = "AUTH_EXPIRED"


# --- Configuration / Request Errors ---

class ConfigurationError(AnalyticsError):
    """Missing or invalid configuration (credentials, connection, mapping)."""

    def __init__(self, message: str, setting: Optional[str] = None, source: Optional[str] = None):
        super().__init__(
            message, code="CONFIG_ERROR",
            details={"setting": setting, "source": source},
        )
        self.source = source


class DateRangeError(AnalyticsError):
    """Requested date range is malformed."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            message, code="VALIDATION_ERROR", details={"field": field},
        )


class CacheError(AnalyticsError):
    """Snapshot store read or write failed."""

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(
            message, code="CACHE_ERROR", details={"table": table},
        )
