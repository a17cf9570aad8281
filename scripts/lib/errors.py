"""
Custom error classes for the location stats service.
Structured error handling with error codes across all modules.

Hierarchy:
    StatsError
    ├── APIError
    │   ├── APIAuthError
    │   ├── APIRateLimitError
    │   └── APITimeoutError
    ├── ConfigError
    ├── LocationNotConfigured
    ├── BadRequestError
    ├── UpstreamPartialFailure
    └── UpstreamFatalFailure
"""


class StatsError(Exception):
    """Base exception for all location stats errors."""

    def __init__(self, message: str, code: str = "UNKNOWN", details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(f"[{code}] {message}")


# --- Upstream CRM errors ---

class APIError(StatsError):
    """Base class for CRM API errors."""

    def __init__(self, message: str, code: str = "API_ERROR",
                 status_code: int = None, url: str = None, **kwargs):
        self.status_code = status_code
        self.url = url
        details = {"status_code": status_code, "url": url, **kwargs}
        super().__init__(message, code=code, details=details)

    @property
    def is_transient(self) -> bool:
        """Whether a retry of the same request could succeed."""
        return self.status_code is not None and (
            self.status_code == 429 or self.status_code >= 500
        )


class APIAuthError(APIError):
    """Authentication or authorization failure."""

    def __init__(self, url: str, status_code: int = 401, body=None):
        super().__init__(
            f"Authentication failed: {url}",
            code="API_AUTH_FAILED", url=url, status_code=status_code, body=body,
        )


class APIRateLimitError(APIError):
    """Rate limit exceeded."""

    def __init__(self, url: str, retry_after: int = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded: {url}"
        if retry_after:
            msg += f" (retry after {retry_after}s)"
        super().__init__(
            msg, code="API_RATE_LIMIT", status_code=429, url=url,
            retry_after=retry_after,
        )


class APITimeoutError(APIError):
    """Request timed out or the connection dropped."""

    def __init__(self, url: str, reason: str = "timeout"):
        super().__init__(
            f"Request failed ({reason}): {url}",
            code="API_TIMEOUT", url=url, reason=reason,
        )

    @property
    def is_transient(self) -> bool:
        return True


# --- Startup / lookup errors ---

class ConfigError(StatsError):
    """Missing or invalid startup configuration. Fatal."""

    def __init__(self, message: str, config_path: str = None, **kwargs):
        super().__init__(
            message, code="CONFIG_ERROR",
            details={"config_path": config_path, **kwargs},
        )


class LocationNotConfigured(StatsError):
    """Slug is not present in the location directory."""

    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(
            "Location not found", code="LOCATION_NOT_FOUND",
            details={"location": slug},
        )


class BadRequestError(StatsError):
    """
    Invalid request parameters.

    ``fields`` maps a parameter name to ``{"message": ..., "rule": ...}``.
    """

    def __init__(self, message: str, fields: dict = None):
        super().__init__(message, code="BAD_REQUEST", details=fields or {})

    @classmethod
    def for_field(cls, field: str, message: str, rule: str) -> "BadRequestError":
        return cls(
            f"Invalid parameter: {field}",
            fields={field: {"message": message, "rule": rule}},
        )


# --- Aggregation errors ---

class UpstreamPartialFailure(StatsError):
    """One pipeline or calendar sub-fetch failed; only its bucket degrades."""

    def __init__(self, resource: str, name: str, cause: Exception = None):
        self.resource = resource
        self.name = name
        reason = _describe(cause)
        super().__init__(
            f"Failed to fetch {resource} '{name}': {reason}",
            code="UPSTREAM_PARTIAL_FAILURE",
            details={"resource": resource, "name": name, "reason": reason},
        )


class UpstreamFatalFailure(StatsError):
    """The minimum viable computation for a location failed."""

    def __init__(self, slug: str, reason: str, cause: Exception = None):
        self.slug = slug
        details = {"location": slug, "reason": reason}
        if isinstance(cause, StatsError):
            details["upstream"] = cause.details
        elif cause is not None:
            details["upstream"] = str(cause)
        super().__init__(
            f"Stats unavailable for '{slug}': {reason}",
            code="UPSTREAM_FATAL_FAILURE", details=details,
        )


def _describe(cause: Exception = None) -> str:
    if cause is None:
        return "unknown error"
    if isinstance(cause, StatsError):
        return cause.message
    return str(cause) or type(cause).__name__
