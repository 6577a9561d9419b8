import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from functools import wraps
from typing import Any, Optional

from shared_query._core import CancellationToken, Result, Stats, fingerprint
from shared_query._errors import CancellationError


logger = logging.getLogger(__name__)

Fetch = Callable[[Any, CancellationToken], Awaitable[Any]]

_LOG_KEY_LENGTH = 80


def _short(key: str) -> str:
    return key if len(key) <= _LOG_KEY_LENGTH else key[:_LOG_KEY_LENGTH] + "..."


class InFlight:
    """Internal container tracking a fetch shared by every observer of `key`."""

    def __init__(self, key: str, token: CancellationToken):
        """Store the fingerprint and the cancellation `token` the fetch was started with."""
        self.key = key
        self.token = token
        self.task: Optional[asyncio.Task[Result]] = None

    async def wait(self) -> Result:
        """Await the shared outcome without letting our own cancellation reach the fetch."""
        try:
            return await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if self.task.cancelled():
                return Result(cancelled=True)
            raise


class InFlightRegistry:
    """Map of fingerprint to the fetch currently running for it.

    Entries exist only while their fetch is running; completed results are
    never kept. Lookups and publication are synchronous so that the
    check-then-publish sequence cannot be interleaved with other coroutines.
    """

    def __init__(self):
        """Initialise shared state for tracking in-flight fetches and statistics."""
        self.in_flight: dict[str, InFlight] = {}
        self.stats = Stats()

    def get(self, key: str) -> Optional[InFlight]:
        return self.in_flight.get(key)

    def acquire(
        self, key: str, fn: Fetch, params: Any, token: CancellationToken
    ) -> tuple[InFlight, bool]:
        """Attach to the fetch running for `key`, or start `fn` with `token` and publish it.

        Returns the entry and whether this caller started it.
        """
        fn_call = self.in_flight.get(key)
        if fn_call is not None:
            self.stats.hits += 1
            logger.debug("Attaching to in-flight fetch %s", _short(key))
            return fn_call, False

        self.stats.misses += 1
        self.stats.in_flight += 1
        fn_call = InFlight(key, token)
        fn_call.task = asyncio.get_running_loop().create_task(self._execute(fn, params, token))
        # Registered before any observer can await the task, so the entry is
        # gone by the time observers resume.
        fn_call.task.add_done_callback(lambda task: self._settle(fn_call, task))
        self.in_flight[key] = fn_call
        logger.debug("Started fetch %s", _short(key))
        return fn_call, True

    async def _execute(self, fn: Fetch, params: Any, token: CancellationToken) -> Result:
        try:
            value = await fn(params, token)
        except CancellationError:
            return Result(cancelled=True)
        except Exception as e:
            return Result(error=e)
        return Result(value=value)

    def _settle(self, fn_call: InFlight, task: "asyncio.Task[Result]") -> None:
        if self.in_flight.get(fn_call.key) is fn_call:
            del self.in_flight[fn_call.key]
        self.stats.in_flight -= 1

        if task.cancelled():
            self.stats.cancelled += 1
            outcome = "cancelled"
        elif task.exception() is not None:
            self.stats.errors += 1
            outcome = "aborted"
        elif task.result().cancelled:
            self.stats.cancelled += 1
            outcome = "cancelled"
        elif task.result().error is not None:
            self.stats.errors += 1
            outcome = "failed"
        else:
            outcome = "succeeded"
        logger.debug("Fetch %s %s", _short(fn_call.key), outcome)

    async def call(
        self,
        fn: Fetch,
        params: Any = None,
        *,
        key: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> Any:
        """Await `fn(params, token)`, sharing one execution among concurrent identical calls."""
        fn_call, _ = self.acquire(
            fingerprint(fn, params, key=key), fn, params, token or CancellationToken()
        )
        result = await fn_call.wait()
        return result.unwrap()

    def get_stats(self) -> Stats:
        """Return a snapshot of accumulated `Stats` without mutating internal state."""
        return replace(self.stats)

    def reset_stats(self):
        """Reset all counters except the number of fetches still running."""
        self.stats = Stats(in_flight=self.stats.in_flight)

    def forget(self, key: str):
        """Drop the in-flight entry for `key` so the next request starts a fresh fetch."""
        self.in_flight.pop(key, None)

    def forget_all(self):
        """Clear every tracked in-flight fetch."""
        self.in_flight.clear()

    def keys(self) -> list[str]:
        return list(self.in_flight)

    def __contains__(self, key: object) -> bool:
        return key in self.in_flight

    def __len__(self) -> int:
        return len(self.in_flight)

    def group(self, key: Optional[str] = None) -> Callable[[Fetch], Fetch]:
        """Decorator for automatic request coalescing.

        Args:
            key: Optional identity used instead of the function's own name.

        Usage:
            registry = InFlightRegistry()

            @registry.group()
            async def get_users(params, token):
                return await api.get("/users", params=params)

            users = await get_users({"status": "active"})
        """
        def decorator(fn: Fetch) -> Fetch:
            """Wrap `fn` so that concurrent identical calls share one fetch."""

            @wraps(fn)
            async def wrapper(params: Any = None, token: Optional[CancellationToken] = None) -> Any:
                """Execute `fn` through the registry for the computed fingerprint."""
                return await self.call(fn, params, key=key, token=token)

            return wrapper

        return decorator


_default_registry: Optional[InFlightRegistry] = None


def default_registry() -> InFlightRegistry:
    """Return the process-wide registry used by coordinators that are not given one."""
    global _default_registry
    if _default_registry is None:
        _default_registry = InFlightRegistry()
    return _default_registry
