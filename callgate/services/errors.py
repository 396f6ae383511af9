"""
Service layer exceptions.
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class ConfigurationError(ServiceError):
    """Invalid settings or runtime configuration."""

    pass


class CanonicalizationError(ServiceError):
    """Payload cannot be turned into a stable fingerprint."""

    def __init__(self, endpoint: str, reason: str):
        self.endpoint = endpoint
        super().__init__(
            f"Cannot fingerprint payload for '{endpoint}': {reason}",
            service_id=endpoint,
        )


class UpstreamError(ServiceError):
    """The wrapped upstream call failed."""

    def __init__(
        self,
        message: str,
        endpoint: str | None = None,
        status_code: int | None = None,
    ):
        self.endpoint = endpoint
        self.status_code = status_code
        super().__init__(message, service_id=endpoint)


class UpstreamTimeoutError(UpstreamError):
    """Upstream call timed out."""

    def __init__(self, endpoint: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to '{endpoint}' timed out after {timeout}s",
            endpoint=endpoint,
        )


class RateLimitError(UpstreamError):
    """Upstream rejected the call with a rate limit."""

    def __init__(self, endpoint: str, retry_after: float | None = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for '{endpoint}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, endpoint=endpoint, status_code=429)


class CacheError(ServiceError):
    """Cache operation failed."""

    pass


class CapacityError(CacheError):
    """Persistent tier write failed even after eviction."""

    pass


class QuotaExceededError(CacheError):
    """A key-value storage write would exceed the storage quota."""

    def __init__(self, key: str, required: int, available: int):
        self.key = key
        self.required = required
        self.available = available
        super().__init__(
            f"Storage quota exceeded writing '{key[:50]}': "
            f"needs {required} bytes, {available} available"
        )


class SchedulerClosedError(ServiceError):
    """Work was submitted to a scheduler that has been closed."""

    pass
