import asyncio
import functools
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, is_dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, TypeVar
from uuid import UUID

from shared_query._errors import CancellationError, SerializationError


logger = logging.getLogger(__name__)

T = TypeVar("T")

UNSERIALIZABLE = "<unserializable>"
_ANONYMOUS = "<lambda>"
_MAX_REPR = 64


@dataclass(frozen=True)
class Result:
    """Outcome of a shared fetch: a value, an error, or a cancellation."""

    value: Any = None
    error: Optional[BaseException] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.cancelled and self.error is None

    def unwrap(self) -> Any:
        """Return the value, re-raising the error or the cancellation."""
        if self.cancelled:
            raise CancellationError("Shared fetch was cancelled")
        if self.error is not None:
            raise self.error
        return self.value


@dataclass
class Stats:
    """Counters kept by an `InFlightRegistry`."""

    hits: int = 0
    misses: int = 0
    errors: int = 0
    cancelled: int = 0
    in_flight: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class CancellationToken:
    """Cooperative cancellation signal handed to every fetch.

    A fetch checks it at its suspension points with `raise_if_cancelled()`,
    or wraps awaitables in `guard()` to abort as soon as the token fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError("Fetch was cancelled")

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    async def guard(self, aw: Awaitable[T]) -> T:
        """Await `aw`, abandoning it with `CancellationError` if the token fires first."""
        if self._event.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise CancellationError("Fetch was cancelled")
        work = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work in done:
            return work.result()
        work.cancel()
        raise CancellationError("Fetch was cancelled")

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"<CancellationToken {state} at {id(self):#x}>"


def _to_json(obj: Any) -> Any:
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=canonicalize)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date, time)):
        return obj.isoformat()
    if isinstance(obj, (Decimal, UUID)):
        return str(obj)
    if is_dataclass(obj) and not isinstance(obj, type):
        return asdict(obj)
    model_dump = getattr(obj, "model_dump", None)
    if callable(model_dump):
        return model_dump(mode="json")
    raise TypeError(f"Object of type {type(obj).__name__} is not serializable")


def canonicalize(params: Any) -> str:
    """Serialize `params` to a string that ignores mapping key order.

    `None` is treated as an empty mapping. Raises `SerializationError` for
    values that have no JSON form, including circular structures.
    """
    if params is None:
        params = {}
    try:
        return json.dumps(
            params,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            default=_to_json,
        )
    except (TypeError, ValueError, RecursionError) as e:
        raise SerializationError(f"Cannot canonicalize params: {e}") from e


def function_identity(fn: Callable[..., Any]) -> str:
    """Derive a stable name for a fetch function.

    Lambdas are qualified by their defining file and line so that anonymous
    fetches written at different call sites never share an identity.
    """
    if isinstance(fn, functools.partial):
        try:
            bound = canonicalize({"args": list(fn.args), "keywords": fn.keywords})
        except SerializationError:
            logger.warning("Bound arguments of partial %r are not serializable", fn)
            bound = UNSERIALIZABLE
        return f"{function_identity(fn.func)}({bound})"

    qualname = getattr(fn, "__qualname__", None)
    if qualname is None:
        if callable(fn):
            cls = type(fn)
            return f"{cls.__module__}.{cls.__qualname__}"
        return repr(fn)[:_MAX_REPR]

    module = getattr(fn, "__module__", None) or "<unknown>"
    if _ANONYMOUS in qualname:
        code = getattr(fn, "__code__", None)
        if code is not None:
            return f"{module}.{qualname}@{code.co_filename}:{code.co_firstlineno}"
        return repr(fn)[:_MAX_REPR]
    return f"{module}.{qualname}"


def fingerprint(fn: Callable[..., Any], params: Any = None, *, key: Optional[str] = None) -> str:
    """Return the deduplication key for calling `fn` with `params`.

    An explicit `key` replaces the derived function identity. Params that
    cannot be canonicalized degrade to a fixed marker instead of raising.
    """
    identity = key if key else function_identity(fn)
    try:
        canonical = canonicalize(params)
    except SerializationError as e:
        logger.warning("Using degraded fingerprint for %s: %s", identity, e)
        canonical = UNSERIALIZABLE
    return f"{identity}:{canonical}"
