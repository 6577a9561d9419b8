import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from shared_query._async import Fetch, InFlight, InFlightRegistry, _short, default_registry
from shared_query._core import CancellationToken, Result, fingerprint
from shared_query._errors import CoordinatorClosedError


logger = logging.getLogger(__name__)

Attempt = tuple[InFlight, CancellationToken]


class QueryStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class QueryState:
    """Read-only view of a coordinator's state, handed to rendering code."""

    data: Any
    is_loading: bool
    error: Optional[BaseException]
    status: QueryStatus


class QueryCoordinator:
    """Load `fn(params, token)` for one call site, sharing identical fetches through a registry.

    The most recently started attempt is the only one allowed to update
    state; results of superseded attempts are dropped. Cancellation never
    surfaces as `error`, and a failure keeps the last good `data`.

    Every method that starts loading must be called from a running event loop.

    Usage:
        async with QueryCoordinator(get_users, {"status": "active"}, registry=registry) as users:
            await users.wait()
            render(users.data)
            users.update({"status": "inactive"})
    """

    def __init__(
        self,
        fn: Fetch,
        params: Any = None,
        *,
        registry: Optional[InFlightRegistry] = None,
        key: Optional[str] = None,
        placeholder: Callable[[], Any] = dict,
    ):
        self.fn = fn
        self.params = params
        self.key = key
        self.registry = registry if registry is not None else default_registry()

        self.data: Any = placeholder()
        self.is_loading = False
        self.error: Optional[BaseException] = None
        self.status = QueryStatus.IDLE
        self.last_fingerprint: Optional[str] = None

        # _token identifies the authoritative attempt; _owned is the token of
        # the fetch this instance started, which attached attempts may share.
        self._token: Optional[CancellationToken] = None
        self._owned: Optional[CancellationToken] = None
        self._pending: Optional[str] = None
        self._active = False
        self._closed = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.fn, self.params, key=self.key)

    def snapshot(self) -> QueryState:
        return QueryState(self.data, self.is_loading, self.error, self.status)

    def activate(self) -> Optional[asyncio.Task]:
        """Start the first load. Later calls do nothing."""
        self._check_open()
        if self._active:
            return None
        self._active = True
        return self._schedule(self._begin(force=False))

    def update(self, params: Any) -> Optional[asyncio.Task]:
        """Replace the params, loading again only if the fingerprint changed."""
        self._check_open()
        self.params = params
        if not self._active:
            return None
        return self._schedule(self._begin(force=False))

    def refetch(self) -> Optional[asyncio.Task]:
        """Force a new load even if the params were already loaded.

        Returns the task that applies the outcome; awaiting it is optional.
        """
        self._check_open()
        self._active = True
        return self._schedule(self._begin(force=True))

    async def load(self, *, force: bool = False) -> QueryState:
        """Load and wait for the outcome in the caller's task."""
        self._check_open()
        self._active = True
        attempt = self._begin(force=force)
        if attempt is None:
            return self.snapshot()
        return await self._finish(*attempt)

    async def wait(self) -> QueryState:
        """Wait until every scheduled load has applied or discarded its outcome."""
        while self._tasks:
            await asyncio.gather(*self._tasks)
        return self.snapshot()

    def close(self):
        """Tear down: signal outstanding tokens. Registry entries are left to settle."""
        if self._closed:
            return
        self._closed = True
        for token in (self._token, self._owned):
            if token is not None:
                token.cancel()
        logger.debug("Closed query for %s", _short(self._pending or self.last_fingerprint or ""))

    async def __aenter__(self) -> "QueryCoordinator":
        self.activate()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _check_open(self):
        if self._closed:
            raise CoordinatorClosedError("Query coordinator has been closed")

    def _schedule(self, attempt: Optional[Attempt]) -> Optional[asyncio.Task]:
        if attempt is None:
            return None
        task = asyncio.get_running_loop().create_task(self._finish(*attempt))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _begin(self, force: bool) -> Optional[Attempt]:
        # No awaits here: fingerprinting, attach-or-start and the token swap
        # must not interleave with other coroutines.
        key = fingerprint(self.fn, self.params, key=self.key)
        target = self._pending if self._pending is not None else self.last_fingerprint
        if not force and key == target:
            return None

        token = CancellationToken()
        fn_call, started = self.registry.acquire(key, self.fn, self.params, token)

        for stale in (self._token, self._owned):
            if stale is not None and stale is not fn_call.token:
                stale.cancel()
        if started:
            self._owned = token
        elif self._owned is not fn_call.token:
            self._owned = None

        self._token = token
        self._pending = key
        self.error = None
        self.is_loading = True
        self.status = QueryStatus.LOADING
        return fn_call, token

    async def _finish(self, fn_call: InFlight, token: CancellationToken) -> QueryState:
        while True:
            try:
                result = await fn_call.wait()
            except asyncio.CancelledError:
                # The caller stopped waiting; the attempt is abandoned, not loading.
                if token is self._token:
                    self._pending = None
                    self.is_loading = False
                    self.status = self._resting_status()
                raise
            if token is not self._token or self._closed:
                logger.debug("Discarding superseded result for %s", _short(fn_call.key))
                return self.snapshot()
            if result.cancelled and fn_call.token is not token and not token.cancelled:
                # Another instance's fetch was cancelled under us; we still want the data.
                logger.debug("Attached fetch %s was cancelled, reloading", _short(fn_call.key))
                fn_call, token = self._begin(force=True)
                continue
            break

        self._apply(fn_call.key, result)
        return self.snapshot()

    def _apply(self, key: str, result: Result):
        self._pending = None
        if result.cancelled:
            self.is_loading = False
            self.status = self._resting_status()
            return

        self.is_loading = False
        if result.error is not None:
            self.error = result.error
            self.status = QueryStatus.FAILED
            logger.debug("Fetch %s failed: %r", _short(key), result.error)
        else:
            self.data = result.value
            self.error = None
            self.last_fingerprint = key
            self.status = QueryStatus.SUCCESS

    def _resting_status(self) -> QueryStatus:
        if self.error is not None:
            return QueryStatus.FAILED
        if self.last_fingerprint is not None:
            return QueryStatus.SUCCESS
        return QueryStatus.IDLE

    def __repr__(self) -> str:
        return f"<QueryCoordinator {self.status.value} {_short(self.fingerprint)}>"
