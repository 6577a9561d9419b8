from shared_query._async import InFlight, InFlightRegistry, default_registry
from shared_query._core import (
    CancellationToken,
    Result,
    Stats,
    canonicalize,
    fingerprint,
    function_identity,
)
from shared_query._errors import (
    CancellationError,
    ConflictError,
    CoordinatorClosedError,
    ForbiddenError,
    NetworkError,
    QueryError,
    SerializationError,
    ServerError,
    TransportError,
    UnauthorizedError,
    ValidationError,
    error_for_status,
)
from shared_query._query import QueryCoordinator, QueryState, QueryStatus


__all__ = [
    "CancellationError",
    "CancellationToken",
    "ConflictError",
    "CoordinatorClosedError",
    "ForbiddenError",
    "InFlight",
    "InFlightRegistry",
    "NetworkError",
    "QueryCoordinator",
    "QueryError",
    "QueryState",
    "QueryStatus",
    "Result",
    "SerializationError",
    "ServerError",
    "Stats",
    "TransportError",
    "UnauthorizedError",
    "ValidationError",
    "canonicalize",
    "default_registry",
    "error_for_status",
    "fingerprint",
    "function_identity",
]
