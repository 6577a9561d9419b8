import asyncio

import pytest

from shared_query._async import InFlightRegistry
from shared_query._errors import CoordinatorClosedError, TransportError
from shared_query._query import QueryCoordinator, QueryStatus


class FakeUsersApi:
    """Users endpoint whose responses are released by hand, one gate per status."""

    def __init__(self, honor_cancellation: bool = True):
        self.honor_cancellation = honor_cancellation
        self.calls: list[dict] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.failures: dict[str, Exception] = {}

    def gate(self, status: str) -> asyncio.Event:
        return self.gates.setdefault(status, asyncio.Event())

    def release(self, status: str):
        self.gate(status).set()

    async def get_users(self, params, token):
        status = params["status"]
        self.calls.append(dict(params))
        if self.honor_cancellation:
            await token.guard(self.gate(status).wait())
        else:
            await self.gate(status).wait()
        if status in self.failures:
            raise self.failures[status]
        return [{"name": f"{status}-user", "status": status}]


async def settle():
    for _ in range(20):
        await asyncio.sleep(0)


def test_initial_state_is_idle_with_empty_data():
    api = FakeUsersApi()
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=InFlightRegistry())

    assert query.data == {}
    assert query.is_loading is False
    assert query.error is None
    assert query.status is QueryStatus.IDLE
    assert query.last_fingerprint is None

    as_list = QueryCoordinator(api.get_users, placeholder=list, registry=InFlightRegistry())
    assert as_list.data == []


@pytest.mark.asyncio
async def test_identical_queries_share_one_fetch():
    registry = InFlightRegistry()
    api = FakeUsersApi()
    first = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)
    second = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    first_task = first.activate()
    second_task = second.activate()
    assert first.is_loading and second.is_loading
    assert first.fingerprint in registry

    await settle()
    assert len(api.calls) == 1

    api.release("active")
    await asyncio.gather(first_task, second_task)

    assert len(api.calls) == 1
    assert first.data == [{"name": "active-user", "status": "active"}]
    assert second.data is first.data
    assert first.status is second.status is QueryStatus.SUCCESS
    assert first.fingerprint not in registry

    stats = registry.get_stats()
    assert stats.hits == 1
    assert stats.misses == 1


@pytest.mark.asyncio
async def test_late_observer_attaches_to_pending_fetch():
    registry = InFlightRegistry()
    calls = 0

    async def get_users(params, token):
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.05)
        return [{"name": "ada", "status": params["status"]}]

    first = QueryCoordinator(get_users, {"status": "active"}, registry=registry)
    second = QueryCoordinator(get_users, {"status": "active"}, registry=registry)

    first.activate()
    await asyncio.sleep(0.005)
    second.activate()
    await asyncio.gather(first.wait(), second.wait())

    assert calls == 1
    assert first.data is second.data
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_param_change_cancels_and_supersedes_previous_fetch():
    registry = InFlightRegistry()
    api = FakeUsersApi()
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    query.activate()
    await settle()
    query.update({"status": "inactive"})
    await settle()

    assert [call["status"] for call in api.calls] == ["active", "inactive"]

    api.release("inactive")
    await query.wait()

    assert query.data == [{"name": "inactive-user", "status": "inactive"}]
    assert query.error is None
    assert query.status is QueryStatus.SUCCESS
    assert len(registry) == 0
    assert registry.get_stats().cancelled == 1


@pytest.mark.asyncio
async def test_late_result_of_superseded_fetch_is_discarded():
    registry = InFlightRegistry()
    api = FakeUsersApi(honor_cancellation=False)
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    query.activate()
    await settle()
    query.update({"status": "inactive"})

    api.release("inactive")
    await settle()
    assert query.data == [{"name": "inactive-user", "status": "inactive"}]

    api.release("active")
    await query.wait()

    assert query.data == [{"name": "inactive-user", "status": "inactive"}]
    assert query.last_fingerprint.endswith('{"status":"inactive"}')
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_late_failure_of_superseded_fetch_is_discarded():
    registry = InFlightRegistry()
    api = FakeUsersApi(honor_cancellation=False)
    api.failures["active"] = TransportError("server error", status=500)
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    query.activate()
    await settle()
    query.update({"status": "inactive"})
    api.release("inactive")
    api.release("active")
    await query.wait()

    assert query.error is None
    assert query.status is QueryStatus.SUCCESS
    assert query.data == [{"name": "inactive-user", "status": "inactive"}]


@pytest.mark.asyncio
async def test_teardown_mid_fetch_is_silent():
    registry = InFlightRegistry()
    api = FakeUsersApi()
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    task = query.activate()
    await settle()
    query.close()
    await task

    assert query.error is None
    assert query.status is not QueryStatus.FAILED
    assert query.data == {}
    assert query.last_fingerprint is None
    assert len(registry) == 0
    assert registry.get_stats().cancelled == 1


@pytest.mark.asyncio
async def test_result_arriving_after_teardown_is_ignored():
    registry = InFlightRegistry()
    api = FakeUsersApi(honor_cancellation=False)
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    task = query.activate()
    await settle()
    query.close()
    api.release("active")
    await task

    assert query.data == {}
    assert query.last_fingerprint is None


@pytest.mark.asyncio
async def test_refetch_in_a_row_fetches_each_time():
    registry = InFlightRegistry()
    api = FakeUsersApi()
    api.release("active")
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    await query.refetch()
    await query.refetch()

    assert len(api.calls) == 2
    assert query.status is QueryStatus.SUCCESS


@pytest.mark.asyncio
async def test_concurrent_refetches_share_one_fetch():
    registry = InFlightRegistry()
    api = FakeUsersApi()
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    first = query.refetch()
    second = query.refetch()
    await settle()
    assert len(api.calls) == 1

    api.release("active")
    await asyncio.gather(first, second)

    assert len(api.calls) == 1
    assert query.data == [{"name": "active-user", "status": "active"}]
    assert query.status is QueryStatus.SUCCESS
    assert registry.get_stats().cancelled == 0


@pytest.mark.asyncio
async def test_refetch_attaches_to_another_instances_fetch():
    registry = InFlightRegistry()
    api = FakeUsersApi()
    owner = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)
    other = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    owner.activate()
    other.refetch()
    await settle()
    api.release("active")
    await asyncio.gather(owner.wait(), other.wait())

    assert len(api.calls) == 1
    assert other.data is owner.data


@pytest.mark.asyncio
async def test_unchanged_params_do_not_reload():
    registry = InFlightRegistry()
    api = FakeUsersApi()
    api.release("active")
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    await query.activate()
    assert query.update({"status": "active"}) is None
    assert query.activate() is None

    assert len(api.calls) == 1


@pytest.mark.asyncio
async def test_switching_back_to_loaded_params_while_loading():
    registry = InFlightRegistry()
    api = FakeUsersApi()
    api.release("active")
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)
    await query.activate()

    query.update({"status": "inactive"})
    await settle()
    assert query.update({"status": "active"}) is not None
    await query.wait()
    api.release("inactive")
    await settle()

    assert query.data == [{"name": "active-user", "status": "active"}]
    assert [call["status"] for call in api.calls] == ["active", "inactive", "active"]


@pytest.mark.asyncio
async def test_registry_is_cleared_after_success_and_failure():
    registry = InFlightRegistry()
    api = FakeUsersApi()
    api.release("active")
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    await query.refetch()
    assert query.fingerprint not in registry

    api.failures["active"] = TransportError("unavailable", status=503)
    await query.refetch()
    assert query.fingerprint not in registry

    await query.refetch()
    assert len(api.calls) == 3


@pytest.mark.asyncio
async def test_failed_fetch_keeps_last_good_data():
    registry = InFlightRegistry()
    api = FakeUsersApi()
    api.release("active")
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    await query.activate()
    good = query.data
    loaded = query.last_fingerprint

    failure = TransportError("server error", status=500)
    api.failures["active"] = failure
    await query.refetch()

    assert query.data is good
    assert query.error is failure
    assert query.status is QueryStatus.FAILED
    assert query.is_loading is False
    assert query.last_fingerprint == loaded

    del api.failures["active"]
    await query.refetch()
    assert query.error is None
    assert query.status is QueryStatus.SUCCESS


@pytest.mark.asyncio
async def test_any_exception_is_recorded_as_error():
    async def broken(params, token):
        raise ValueError("bad payload")

    query = QueryCoordinator(broken, registry=InFlightRegistry())
    state = await query.load()

    assert isinstance(state.error, ValueError)
    assert state.status is QueryStatus.FAILED
    assert state.data == {}


@pytest.mark.asyncio
async def test_observer_reloads_when_owner_is_torn_down():
    registry = InFlightRegistry()
    api = FakeUsersApi()
    owner = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)
    observer = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    owner.activate()
    observer.activate()
    await settle()
    owner.close()
    await settle()

    assert len(api.calls) == 2
    assert observer.is_loading

    api.release("active")
    await observer.wait()

    assert observer.status is QueryStatus.SUCCESS
    assert observer.error is None
    assert owner.data == {}


@pytest.mark.asyncio
async def test_context_manager_activates_and_tears_down():
    registry = InFlightRegistry()
    api = FakeUsersApi()

    async with QueryCoordinator(api.get_users, {"status": "active"}, registry=registry) as query:
        assert query.is_loading
        await settle()

    assert query.closed
    await settle()
    assert len(registry) == 0
    assert query.error is None

    with pytest.raises(CoordinatorClosedError):
        query.refetch()
    with pytest.raises(CoordinatorClosedError):
        query.update({"status": "inactive"})


@pytest.mark.asyncio
async def test_load_returns_snapshot():
    api = FakeUsersApi()
    api.release("active")
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=InFlightRegistry())

    state = await query.load()

    assert state.data == [{"name": "active-user", "status": "active"}]
    assert state.is_loading is False
    assert state.status is QueryStatus.SUCCESS
    assert state == query.snapshot()

    again = await query.load()
    assert again == state
    assert len(api.calls) == 1


@pytest.mark.asyncio
async def test_explicit_key_separates_functions_with_the_same_identity():
    registry = InFlightRegistry()
    release = asyncio.Event()

    def make_fetch(source):
        async def fetch(params, token):
            await release.wait()
            return source

        return fetch

    users = QueryCoordinator(make_fetch("users"), registry=registry, key="users")
    teams = QueryCoordinator(make_fetch("teams"), registry=registry, key="teams")

    users.activate()
    teams.activate()
    release.set()
    await asyncio.gather(users.wait(), teams.wait())

    assert users.data == "users"
    assert teams.data == "teams"


@pytest.mark.asyncio
async def test_timed_out_load_does_not_stay_loading():
    registry = InFlightRegistry()
    calls = 0

    async def get_users(params, token):
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.05)
        return [{"name": "ada", "status": params["status"]}]

    query = QueryCoordinator(get_users, {"status": "active"}, registry=registry)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(query.load(), timeout=0.01)

    assert query.is_loading is False
    assert query.status is QueryStatus.IDLE
    await asyncio.sleep(0.1)
    assert len(registry) == 0

    task = query.update({"status": "active"})
    assert task is not None
    await task

    assert calls == 2
    assert query.status is QueryStatus.SUCCESS
    assert query.data == [{"name": "ada", "status": "active"}]


@pytest.mark.asyncio
async def test_cancelled_refetch_task_does_not_stay_loading():
    registry = InFlightRegistry()
    api = FakeUsersApi()
    api.release("active")
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)
    await query.activate()

    api.gates["active"] = asyncio.Event()
    task = query.refetch()
    await settle()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert query.is_loading is False
    assert query.status is QueryStatus.SUCCESS
    assert query.data == [{"name": "active-user", "status": "active"}]

    api.release("active")
    await settle()
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_entering_loading_clears_previous_error():
    registry = InFlightRegistry()
    api = FakeUsersApi()
    api.failures["active"] = TransportError("server error", status=500)
    api.release("active")
    query = QueryCoordinator(api.get_users, {"status": "active"}, registry=registry)

    await query.activate()
    assert query.status is QueryStatus.FAILED

    del api.failures["active"]
    api.gates["active"] = asyncio.Event()
    task = query.refetch()

    assert query.error is None
    assert query.is_loading is True

    api.release("active")
    await task
    assert query.status is QueryStatus.SUCCESS
