"""
Test the refresh coordinator.

Covers publish-on-success, failure handling that keeps the last good
snapshot, backoff growth and reset, trigger coalescing and the background
loop lifecycle.
"""

import asyncio

import pytest

from slack_user_cache.errors import UpstreamAuthError, UpstreamNetworkError
from slack_user_cache.models import Roster
from slack_user_cache.refresh import RefreshCoordinator
from slack_user_cache.store import UserStore


def make_coordinator(upstream, **kwargs) -> RefreshCoordinator:
    options = dict(refresh_interval=60.0, refresh_timeout=1.0, backoff_base=1.0, backoff_max=8.0)
    options.update(kwargs)
    return RefreshCoordinator(UserStore(), upstream, **options)


async def wait_until(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_successful_refresh_publishes_generation_one(fake_upstream, two_user_roster):
    coordinator = make_coordinator(fake_upstream(two_user_roster))

    assert await coordinator.trigger_refresh("test") is True

    snapshot = coordinator.store.current_snapshot()
    assert snapshot.generation == 1
    assert set(snapshot.users) == {"U1", "U2"}
    assert set(snapshot.groups) == {"S1"}
    assert coordinator.consecutive_failures == 0


@pytest.mark.asyncio
async def test_generations_increase_across_refreshes(fake_upstream, two_user_roster):
    coordinator = make_coordinator(fake_upstream(two_user_roster))

    generations = []
    for _ in range(3):
        await coordinator.trigger_refresh("test")
        generations.append(coordinator.store.current_snapshot().generation)

    assert generations == [1, 2, 3]


@pytest.mark.asyncio
async def test_timeout_keeps_previous_snapshot(fake_upstream, two_user_roster):
    """Second refresh times out: generation 1 stays served and the error is recorded."""
    coordinator = make_coordinator(fake_upstream(two_user_roster, "hang"), refresh_timeout=0.05)

    await coordinator.trigger_refresh("first")
    first = coordinator.store.current_snapshot()
    success_at = coordinator.store.state.last_success_at

    await coordinator.trigger_refresh("second")

    state = coordinator.store.state
    assert state.snapshot is first
    assert state.snapshot.generation == 1
    assert state.snapshot.get_user("U1") is not None
    assert state.snapshot.get_user("U2") is not None
    assert state.last_success_at == success_at
    assert state.last_error.kind == "timeout"
    assert state.last_attempt_at >= success_at


@pytest.mark.asyncio
async def test_empty_roster_rejected_when_cache_has_users(fake_upstream, two_user_roster):
    coordinator = make_coordinator(fake_upstream(two_user_roster, Roster()))

    await coordinator.trigger_refresh("first")
    await coordinator.trigger_refresh("second")

    state = coordinator.store.state
    assert state.snapshot.generation == 1
    assert len(state.snapshot) == 2
    assert state.last_error.kind == "validation"
    assert coordinator.consecutive_failures == 1


@pytest.mark.asyncio
async def test_empty_first_roster_is_published(fake_upstream):
    coordinator = make_coordinator(fake_upstream(Roster()))

    await coordinator.trigger_refresh("first")

    snapshot = coordinator.store.current_snapshot()
    assert snapshot is not None
    assert len(snapshot) == 0


@pytest.mark.asyncio
async def test_duplicate_ids_rejected(fake_upstream, user_factory):
    roster = Roster(users=[user_factory("U1"), user_factory("U1")])
    coordinator = make_coordinator(fake_upstream(roster))

    assert await coordinator.trigger_refresh("test") is True

    assert coordinator.store.current_snapshot() is None
    assert coordinator.store.state.last_error.kind == "validation"


@pytest.mark.asyncio
async def test_upstream_error_kind_recorded(fake_upstream):
    coordinator = make_coordinator(fake_upstream(UpstreamAuthError("invalid_auth")))

    await coordinator.trigger_refresh("test")

    error = coordinator.store.state.last_error
    assert error.kind == "auth"
    assert "invalid_auth" in error.message


@pytest.mark.asyncio
async def test_unexpected_exception_is_absorbed(fake_upstream):
    coordinator = make_coordinator(fake_upstream(RuntimeError("kaboom")))

    assert await coordinator.trigger_refresh("test") is True
    assert coordinator.store.state.last_error.message == "kaboom"


@pytest.mark.asyncio
async def test_backoff_grows_until_max_and_resets_on_success(fake_upstream, two_user_roster):
    failure = UpstreamNetworkError("connection refused")
    coordinator = make_coordinator(
        fake_upstream(failure, failure, failure, failure, failure, two_user_roster),
        backoff_base=1.0,
        backoff_max=8.0,
        refresh_interval=60.0
    )

    delays = []
    for _ in range(5):
        await coordinator.trigger_refresh("test")
        delays.append(coordinator.next_delay())

    assert delays == [1.0, 2.0, 4.0, 8.0, 8.0]
    assert delays[1] > delays[0]

    await coordinator.trigger_refresh("test")

    assert coordinator.consecutive_failures == 0
    assert coordinator.current_backoff == 1.0
    assert coordinator.next_delay() == 60.0


@pytest.mark.asyncio
async def test_failed_refresh_never_advances_generation(fake_upstream, two_user_roster):
    coordinator = make_coordinator(fake_upstream(two_user_roster, UpstreamNetworkError("down")))

    await coordinator.trigger_refresh("first")
    for _ in range(3):
        await coordinator.trigger_refresh("again")

    assert coordinator.store.current_snapshot().generation == 1
    assert coordinator.store.next_generation() == 2


@pytest.mark.asyncio
async def test_concurrent_triggers_coalesce(fake_upstream, two_user_roster):
    """Triggers arriving while a refresh is running run no extra attempt."""
    upstream = fake_upstream(two_user_roster)
    upstream.gate = asyncio.Event()
    coordinator = make_coordinator(upstream)

    first = asyncio.create_task(coordinator.trigger_refresh("first"))
    await wait_until(lambda: upstream.calls == 1)

    others = await asyncio.gather(*(coordinator.trigger_refresh("other") for _ in range(5)))
    assert others == [False] * 5
    assert coordinator.refreshing
    assert coordinator.request_refresh("signal") is False

    upstream.gate.set()
    assert await first is True

    assert upstream.calls == 1
    assert coordinator.attempts == 1
    assert not coordinator.refreshing
    assert coordinator.store.current_snapshot().generation == 1


@pytest.mark.asyncio
async def test_background_loop_refreshes_on_startup_and_on_request(fake_upstream, two_user_roster):
    upstream = fake_upstream(two_user_roster)
    coordinator = make_coordinator(upstream, refresh_interval=3600.0)

    coordinator.start()
    try:
        await wait_until(lambda: coordinator.store.current_snapshot() is not None)
        assert coordinator.store.current_snapshot().generation == 1

        assert coordinator.request_refresh("forced") is True
        await wait_until(lambda: coordinator.store.current_snapshot().generation == 2)
    finally:
        await coordinator.stop()

    assert upstream.calls == 2


@pytest.mark.asyncio
async def test_background_loop_refreshes_periodically(fake_upstream, two_user_roster):
    coordinator = make_coordinator(fake_upstream(two_user_roster), refresh_interval=0.02)

    coordinator.start()
    try:
        await wait_until(lambda: (coordinator.store.next_generation() - 1) >= 3)
    finally:
        await coordinator.stop()


@pytest.mark.asyncio
async def test_background_loop_retries_after_failure(fake_upstream, two_user_roster):
    upstream = fake_upstream(UpstreamNetworkError("down"), two_user_roster)
    coordinator = make_coordinator(upstream, backoff_base=0.02, refresh_interval=3600.0)

    coordinator.start()
    try:
        await wait_until(lambda: coordinator.store.current_snapshot() is not None)
    finally:
        await coordinator.stop()

    assert upstream.calls == 2
    assert coordinator.store.state.last_error is None


@pytest.mark.asyncio
async def test_failed_on_demand_refresh_schedules_backoff_retry(fake_upstream, two_user_roster):
    """An inline refresh failing while the loop sleeps out the interval gets a backoff retry."""
    upstream = fake_upstream(two_user_roster, UpstreamNetworkError("down"), two_user_roster)
    coordinator = make_coordinator(upstream, backoff_base=0.05, refresh_interval=3600.0)

    coordinator.start()
    try:
        await wait_until(lambda: coordinator.store.current_snapshot() is not None)
        await asyncio.sleep(0.01)

        assert await coordinator.trigger_refresh("forced") is True
        assert coordinator.consecutive_failures == 1
        assert coordinator.store.state.last_error.kind == "network"

        await wait_until(lambda: coordinator.store.current_snapshot().generation == 2, timeout=1.0)
    finally:
        await coordinator.stop()

    assert upstream.calls == 3
    assert coordinator.consecutive_failures == 0
    assert coordinator.store.state.last_error is None


@pytest.mark.asyncio
async def test_successful_on_demand_refresh_restarts_interval(fake_upstream, two_user_roster):
    upstream = fake_upstream(UpstreamNetworkError("down"), two_user_roster)
    coordinator = make_coordinator(upstream, backoff_base=0.2, refresh_interval=3600.0)

    coordinator.start()
    try:
        await wait_until(lambda: upstream.calls == 1 and not coordinator.refreshing)
        await asyncio.sleep(0.01)

        await coordinator.trigger_refresh("forced")
        assert coordinator.store.current_snapshot().generation == 1

        # The pending backoff retry is dropped in favour of the full interval
        await asyncio.sleep(0.4)
    finally:
        await coordinator.stop()

    assert upstream.calls == 2


@pytest.mark.asyncio
async def test_stale_generation_recorded_as_validation_error(fake_upstream, two_user_roster, monkeypatch):
    coordinator = make_coordinator(fake_upstream(two_user_roster))
    await coordinator.trigger_refresh("first")

    monkeypatch.setattr(coordinator.store, "next_generation", lambda: 1)
    await coordinator.trigger_refresh("second")

    assert coordinator.store.current_snapshot().generation == 1
    assert coordinator.store.state.last_error.kind == "validation"


@pytest.mark.asyncio
async def test_stop_abandons_in_flight_refresh(fake_upstream):
    upstream = fake_upstream("hang")
    coordinator = make_coordinator(upstream, refresh_timeout=3600.0)

    coordinator.start()
    await wait_until(lambda: coordinator.refreshing)
    await coordinator.stop()

    assert coordinator.store.current_snapshot() is None
    assert not coordinator.refreshing
