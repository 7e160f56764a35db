from __future__ import annotations

from typing import List

import pytest

from delivery_sync.changes import ChangeBus, ConnectionState
from delivery_sync.domain.models import ChangeEvent, ChangeKind, ChangeOrigin
from delivery_sync.errors import NetworkError, PersistentSyncFailure

MAX_ATTEMPTS = 5
EXPECTED_BACKOFF = [2.0, 4.0, 8.0, 16.0, 30.0]


def test_backoff_delay_doubles_up_to_cap(bus: ChangeBus) -> None:
    assert [bus.backoff_delay(n) for n in range(1, 7)] == [*EXPECTED_BACKOFF, 30.0]


@pytest.mark.asyncio
async def test_subscribers_share_one_remote_stream(bus: ChangeBus, remote, store) -> None:
    first: List[ChangeEvent] = []
    second: List[ChangeEvent] = []
    sub_a = await bus.subscribe("deliveries", first.append)
    sub_b = await bus.subscribe("deliveries", second.append)

    assert remote.subscriber_count("deliveries") == 1
    assert bus.state("deliveries") == ConnectionState.SUBSCRIBED

    await store.insert("deliveries", {"drNumber": "DR-001"})
    assert [e.kind for e in first] == [ChangeKind.INSERT]
    assert [e.kind for e in second] == [ChangeKind.INSERT]
    assert first[0].origin == ChangeOrigin.REMOTE

    await bus.unsubscribe(sub_a)
    assert remote.subscriber_count("deliveries") == 1
    await bus.unsubscribe(sub_b)
    assert remote.subscriber_count("deliveries") == 0
    assert bus.state("deliveries") == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_unsubscribed_callback_receives_nothing(bus: ChangeBus, store) -> None:
    events: List[ChangeEvent] = []
    keep: List[ChangeEvent] = []
    subscription = await bus.subscribe("deliveries", events.append)
    await bus.subscribe("deliveries", keep.append)

    await bus.unsubscribe(subscription)
    await store.insert("deliveries", {"drNumber": "DR-001"})

    assert events == []
    assert len(keep) == 1
    assert not subscription.active


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_affect_others(bus: ChangeBus) -> None:
    received: List[ChangeEvent] = []

    def broken(event: ChangeEvent) -> None:
        raise RuntimeError("boom")

    await bus.subscribe("deliveries", broken)
    await bus.subscribe("deliveries", received.append)

    bus.publish(ChangeEvent(kind=ChangeKind.UPDATE, table="deliveries", record_id="1", origin=ChangeOrigin.LOCAL))

    assert [e.record_id for e in received] == ["1"]


@pytest.mark.asyncio
async def test_publish_only_reaches_subscribers_of_that_table(bus: ChangeBus) -> None:
    received: List[ChangeEvent] = []
    await bus.subscribe("customers", received.append)

    bus.publish(ChangeEvent(kind=ChangeKind.DELETE, table="deliveries", record_id="1"))

    assert received == []


@pytest.mark.asyncio
async def test_broken_stream_reconnects_with_backoff(bus: ChangeBus, remote, sleeps, eventually) -> None:
    events: List[ChangeEvent] = []
    await bus.subscribe("deliveries", events.append)

    remote.break_streams("deliveries")
    assert bus.state("deliveries") == ConnectionState.ERROR

    await eventually(lambda: bus.state("deliveries") == ConnectionState.SUBSCRIBED)
    assert sleeps == [EXPECTED_BACKOFF[0]]
    assert remote.subscriber_count("deliveries") == 1
    assert events == []


@pytest.mark.asyncio
async def test_persistent_failure_after_max_attempts(bus: ChangeBus, remote, sleeps, eventually) -> None:
    remote.fail("on_change", NetworkError("realtime down"), times=MAX_ATTEMPTS + 1)
    events: List[ChangeEvent] = []

    await bus.subscribe("deliveries", events.append)
    await eventually(lambda: len(events) == 1)

    assert events[0].kind == ChangeKind.FAILURE
    assert isinstance(events[0].error, PersistentSyncFailure)
    assert events[0].error.attempts == MAX_ATTEMPTS
    assert sleeps == EXPECTED_BACKOFF
    assert remote.count("on_change") == MAX_ATTEMPTS + 1
    assert bus.state("deliveries") == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_connectivity_restored_restarts_failed_channel(
    bus: ChangeBus, remote, monitor, sleeps, eventually
) -> None:
    remote.fail("on_change", NetworkError("realtime down"), times=MAX_ATTEMPTS + 1)
    events: List[ChangeEvent] = []
    await bus.subscribe("deliveries", events.append)
    await eventually(lambda: len(events) == 1)
    sleeps.clear()

    monitor.mark_offline()
    monitor.mark_online()

    await eventually(lambda: bus.state("deliveries") == ConnectionState.SUBSCRIBED)
    assert sleeps == []
    assert remote.subscriber_count("deliveries") == 1


@pytest.mark.asyncio
async def test_unsubscribe_during_reconnect_stops_the_cycle(bus: ChangeBus, remote) -> None:
    remote.fail("on_change", NetworkError("realtime down"), times=1)
    subscription = await bus.subscribe("deliveries", lambda event: None)

    await bus.unsubscribe(subscription)

    assert bus.state("deliveries") == ConnectionState.DISCONNECTED
    assert bus.stats() == {}
    assert remote.subscriber_count("deliveries") == 0


@pytest.mark.asyncio
async def test_shutdown_releases_every_stream(bus: ChangeBus, remote) -> None:
    await bus.subscribe("deliveries", lambda event: None)
    await bus.subscribe("customers", lambda event: None)

    await bus.shutdown()

    assert remote.subscriber_count("deliveries") == 0
    assert remote.subscriber_count("customers") == 0
    assert bus.stats() == {}
