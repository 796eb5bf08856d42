"""
Custom exception hierarchy for order synchronization.

Exception Hierarchy:
    OrderSyncError (base)
    ├── UpstreamError                - Remote API failures (carries ErrorKind)
    │   ├── TransientNetworkError    - Retried automatically
    │   │   ├── UpstreamTimeoutError
    │   │   └── UpstreamNetworkError
    │   ├── UpstreamMalformedError   - Non-JSON/HTML body on 2xx (never retried)
    │   ├── UpstreamHTTPError        - Non-2xx response with a body
    │   └── UpstreamUnreachableError - Connection test failed, cycle aborted
    ├── PersistenceConflictError     - Field/length violation on write
    └── DuplicateOrderError          - Insert for an already-known external id

    ConfigurationError               - Missing/invalid configuration
    ValidationError                  - Input validation failed
"""
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    """Failure classes reported by the transport client."""
    TIMEOUT = "timeout"
    NETWORK = "network"
    MALFORMED_RESPONSE = "malformed-response"
    HTTP_ERROR = "http-error"
    UNREACHABLE = "unreachable"


class OrderSyncError(Exception):
    """Base exception for all order sync errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class UpstreamError(OrderSyncError):
    """
    The remote order API failed.

    Check `kind` to decide whether to alert operators or silently defer.
    """

    kind: ErrorKind = ErrorKind.NETWORK
    retryable: bool = False

    def __init__(self, message: str, details: str = None, endpoint: str = None):
        super().__init__(message, details)
        self.endpoint = endpoint


class TransientNetworkError(UpstreamError):
    """Timeout or connection-level failure. Safe to retry."""

    retryable = True


class UpstreamTimeoutError(TransientNetworkError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, details: str = None, endpoint: str = None, timeout: float = None):
        super().__init__(message, details, endpoint)
        self.timeout = timeout


class UpstreamNetworkError(TransientNetworkError):
    kind = ErrorKind.NETWORK


class UpstreamMalformedError(UpstreamError):
    """
    A successful status code with a body we cannot use.

    Usually an HTML error page served by a misconfigured endpoint.
    Never retried.
    """

    kind = ErrorKind.MALFORMED_RESPONSE

    def __init__(
        self,
        message: str,
        details: str = None,
        endpoint: str = None,
        content_type: str = None,
        snippet: str = None,
    ):
        super().__init__(message, details, endpoint)
        self.content_type = content_type
        self.snippet = snippet


class UpstreamHTTPError(UpstreamError):
    """API returned a non-2xx response."""

    kind = ErrorKind.HTTP_ERROR

    def __init__(self, message: str, details: str = None, endpoint: str = None, status_code: int = None):
        super().__init__(message, details, endpoint)
        self.status_code = status_code


class UpstreamUnreachableError(UpstreamError):
    """Connection test failed entirely; the cycle is aborted early."""

    kind = ErrorKind.UNREACHABLE


class PersistenceConflictError(OrderSyncError):
    """
    The store rejected a write because of a schema or length constraint.

    Carries enough context to diagnose the mismatch without re-running
    the whole sync.
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        field: str = None,
        value: Any = None,
        limit: Optional[int] = None,
        external_id: Optional[int] = None,
    ):
        super().__init__(message, details)
        self.field = field
        self.value = value
        self.limit = limit
        self.external_id = external_id

    def __str__(self) -> str:
        base = super().__str__()
        context = []
        if self.external_id is not None:
            context.append(f"external_id={self.external_id}")
        if self.field:
            context.append(f"field={self.field}")
        if self.limit is not None:
            context.append(f"limit={self.limit}")
        if self.value is not None:
            preview = str(self.value)
            if len(preview) > 80:
                preview = preview[:80] + "..."
            context.append(f"value={preview!r} (len={len(str(self.value))})")
        if context:
            return f"{base} [{', '.join(context)}]"
        return base


class DuplicateOrderError(OrderSyncError):
    """Insert attempted for an external id that is already stored."""

    def __init__(self, external_id: int):
        super().__init__(f"Order with external id {external_id} already exists")
        self.external_id = external_id


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


class ValidationError(Exception):
    """
    Input validation failed.

    Used for validating operator input before it reaches the store.
    """

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"
