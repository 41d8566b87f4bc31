"""
Service layer exceptions.

NetworkUnavailableError and SessionExpiredError are handled centrally
(cached/queued paths and re-authentication); everything else is returned
to the caller for per-operation recovery.
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class NetworkUnavailableError(ServiceError):
    """Device is offline, no network call was attempted."""

    def __init__(self, message: str = "Network unavailable", service_id: str | None = None):
        super().__init__(message, service_id=service_id)


class TransportError(ServiceError):
    """DNS, connection or timeout failure while talking to the server."""

    pass


class HTTPError(ServiceError):
    """Server answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = "", service_id: str | None = None):
        self.status_code = status_code
        self.body = body
        msg = f"HTTP {status_code}"
        if body:
            msg += f": {body[:200]}"
        super().__init__(msg, service_id=service_id)


class DecodeError(ServiceError):
    """Response body did not match the expected shape."""

    def __init__(self, status_code: int, detail: str = "", service_id: str | None = None):
        self.status_code = status_code
        msg = f"Could not decode response (HTTP {status_code})"
        if detail:
            msg += f": {detail[:200]}"
        super().__init__(msg, service_id=service_id)


class SessionExpiredError(ServiceError):
    """Credentials could not be refreshed, the user must sign in again."""

    def __init__(self, message: str = "Session expired", service_id: str | None = None):
        super().__init__(message, service_id=service_id)


class RefreshInProgressError(ServiceError):
    """A token refresh is already running (fail-fast refresh policy only)."""

    def __init__(self) -> None:
        super().__init__("Token refresh already in progress")


class ValidationError(ServiceError):
    """Caller-supplied data rejected before any network call."""

    pass


class StoreError(ServiceError):
    """Persistent store operation failed."""

    pass
