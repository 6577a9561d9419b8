from typing import Any, Optional


class QueryError(Exception):
    """Base class for every error raised by shared_query."""


class CancellationError(QueryError):
    """Raised by a fetch whose cancellation token was signaled."""


class SerializationError(QueryError):
    """Raised when query params cannot be canonicalized."""


class CoordinatorClosedError(QueryError):
    """Raised when a torn-down coordinator is asked to load."""


class TransportError(QueryError):
    """Network or server failure surfaced by the transport layer."""

    def __init__(self, message: str = "", status: Optional[int] = None, body: Any = None):
        super().__init__(message or f"Request failed with status {status}")
        self.status = status
        self.body = body


class NetworkError(TransportError):
    """No response was received."""


class ValidationError(TransportError):
    def __init__(self, message: str = "", status: Optional[int] = 400, body: Any = None):
        super().__init__(message, status, body)
        if isinstance(body, dict) and body.get("errors"):
            self.validation_errors = body["errors"]
        else:
            self.validation_errors = body


class UnauthorizedError(TransportError):
    pass


class ForbiddenError(TransportError):
    pass


class ConflictError(TransportError):
    def __init__(self, message: str = "", status: Optional[int] = 409, body: Any = None):
        super().__init__(message, status, body)
        if isinstance(body, dict) and body.get("message"):
            self.conflict_details = body["message"]
        else:
            self.conflict_details = body


class ServerError(TransportError):
    pass


_STATUS_ERRORS: dict[int, type[TransportError]] = {
    400: ValidationError,
    401: UnauthorizedError,
    403: ForbiddenError,
    409: ConflictError,
}


def error_for_status(
    status: Optional[int], body: Any = None, message: str = ""
) -> TransportError:
    """Build the `TransportError` subclass matching an HTTP `status`.

    A missing status means the request never got a response.
    """
    if status is None:
        return NetworkError(message or "Unable to connect to server", None, body)
    if status in _STATUS_ERRORS:
        return _STATUS_ERRORS[status](message, status, body)
    if status >= 500:
        return ServerError(message, status, body)
    return TransportError(message, status, body)
