"""Tests for the membership-filtered live subscriptions."""

from __future__ import annotations

import asyncio

import pytest

from teamcal.domain.errors import TransportError
from teamcal.domain.models import EventCreate, GroupCreate
from teamcal.domain.principal import Viewer
from teamcal.repos.memory import RealtimeStore
from teamcal.services.calendar import CalendarService
from teamcal.services.subscriptions import SyncContext

OWNER = Viewer.of(user_id="uid-owner", email="owner@example.com")
BOB = Viewer.of(user_id="uid-bob", email="Bob@Example.com")


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


async def settle() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


class Recorder:
    """Collects every callback invocation."""

    def __init__(self) -> None:
        self.events: list[list] = []
        self.groups: list[list] = []
        self.errors: list = []

    def on_events(self, items) -> None:
        self.events.append(items)

    def on_groups(self, items) -> None:
        self.groups.append(items)

    def on_error(self, error) -> None:
        self.errors.append(error)


@pytest.fixture
def store():
    return RealtimeStore()


@pytest.fixture
def service(store):
    return CalendarService(store)


@pytest.fixture
def sync(store):
    return SyncContext(store)


@pytest.mark.asyncio
async def test_initial_snapshots_are_delivered(sync, service):
    await service.create_event(EventCreate(title="Mine", date="2026-06-01"), BOB)
    rec = Recorder()

    sub = sync.subscribe(rec.on_events, rec.on_groups, BOB, rec.on_error)
    await wait_until(lambda: rec.events and rec.groups)

    assert [e.title for e in rec.events[-1]] == ["Mine"]
    assert rec.groups[-1] == []
    await sub.aclose()


@pytest.mark.asyncio
async def test_each_change_fires_one_callback(sync, service):
    rec = Recorder()
    sub = sync.subscribe(rec.on_events, rec.on_groups, OWNER)
    await wait_until(lambda: rec.events and rec.groups)
    events_before, groups_before = len(rec.events), len(rec.groups)

    await service.create_event(EventCreate(title="One", date="2026-06-01"), OWNER)
    await wait_until(lambda: len(rec.events) == events_before + 1)
    await settle()

    assert len(rec.events) == events_before + 1
    assert len(rec.groups) == groups_before
    await sub.aclose()


@pytest.mark.asyncio
async def test_events_filtered_with_latest_membership(sync, service, store):
    team = await service.create_group(GroupCreate(name="Team"), OWNER)
    rec = Recorder()
    sub = sync.subscribe(rec.on_events, rec.on_groups, BOB)
    await wait_until(lambda: rec.groups and rec.events)
    assert rec.groups[-1] == []

    # Bob joins the group after subscribing.
    await store.update(f"groups/{team.id}", {"members": ["owner@example.com", "bob@example.com"]})
    await wait_until(lambda: rec.groups[-1] != [])

    # Group-only event: Bob is not in assignedTo, only reachable through the group.
    await store.set(
        "events/e-group",
        {"title": "Team sync", "date": "2026-06-01", "type": "event", "groupIds": [team.id],
         "assignedTo": [], "createdBy": "uid-owner"},
    )
    await wait_until(lambda: any(e.id == "e-group" for e in rec.events[-1]))

    # Bob leaves; the next events update must use the new index.
    await store.update(f"groups/{team.id}", {"members": ["owner@example.com"]})
    await wait_until(lambda: rec.groups[-1] == [])
    await store.update("events/e-group", {"title": "Team sync (moved)"})
    await wait_until(lambda: all(e.id != "e-group" for e in rec.events[-1]))
    await sub.aclose()


@pytest.mark.asyncio
async def test_unsubscribe_stops_all_callbacks(sync, service):
    rec = Recorder()
    sub = sync.subscribe(rec.on_events, rec.on_groups, OWNER)
    await wait_until(lambda: rec.events and rec.groups)
    counts = (len(rec.events), len(rec.groups))

    sub.unsubscribe()
    await service.create_event(EventCreate(title="Late", date="2026-06-01"), OWNER)
    await service.create_group(GroupCreate(name="Late group"), OWNER)
    await settle()

    assert (len(rec.events), len(rec.groups)) == counts
    assert not sub.active


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent(sync, store):
    rec = Recorder()
    sub = sync.subscribe(rec.on_events, rec.on_groups, OWNER)
    await wait_until(lambda: rec.events and rec.groups)

    sub.unsubscribe()
    sub.unsubscribe()
    sub()
    await sub.aclose()

    assert sync.active_subscriptions == 0
    assert store.watcher_count("events") == 0
    assert store.watcher_count("groups") == 0


@pytest.mark.asyncio
async def test_unsubscribe_before_first_delivery(sync, service):
    await service.create_event(EventCreate(title="A", date="2026-06-01"), OWNER)
    rec = Recorder()
    sub = sync.subscribe(rec.on_events, rec.on_groups, OWNER)
    sub.unsubscribe()
    await settle()
    assert rec.events == [] and rec.groups == []


@pytest.mark.asyncio
async def test_feed_failure_reported_once_and_stops_both_feeds(sync, service, store):
    rec = Recorder()
    sub = sync.subscribe(rec.on_events, rec.on_groups, OWNER, rec.on_error)
    await wait_until(lambda: rec.events and rec.groups)
    counts = (len(rec.events), len(rec.groups))

    store.fail_feed("events", "socket closed")
    store.fail_feed("groups", "socket closed")
    await wait_until(lambda: rec.errors)
    await settle()

    assert len(rec.errors) == 1
    assert isinstance(rec.errors[0], TransportError)
    assert not sub.active

    await service.create_group(GroupCreate(name="After failure"), OWNER)
    await settle()
    assert (len(rec.events), len(rec.groups)) == counts


@pytest.mark.asyncio
async def test_feed_failure_without_error_callback_does_not_raise(sync, store):
    rec = Recorder()
    sub = sync.subscribe(rec.on_events, rec.on_groups, OWNER)
    await wait_until(lambda: rec.events and rec.groups)

    store.fail_feed("groups")
    await wait_until(lambda: not sub.active)
    await sub.aclose()


@pytest.mark.asyncio
async def test_callback_exception_does_not_kill_feed(sync, service):
    calls: list[int] = []

    def flaky(items) -> None:
        calls.append(len(items))
        if len(calls) == 1:
            raise RuntimeError("render failed")

    sub = sync.subscribe(flaky, lambda groups: None, OWNER)
    await wait_until(lambda: calls)
    await service.create_event(EventCreate(title="A", date="2026-06-01"), OWNER)
    await wait_until(lambda: len(calls) == 2)
    assert sub.active
    await sub.aclose()


@pytest.mark.asyncio
async def test_context_aclose_tears_down_everything(sync, store):
    rec = Recorder()
    sync.subscribe(rec.on_events, rec.on_groups, OWNER)
    sync.subscribe(rec.on_events, rec.on_groups, BOB)
    sync.subscribe_chat("g1", lambda messages: None)
    await settle()
    assert sync.active_subscriptions == 3

    await sync.aclose()
    assert sync.active_subscriptions == 0
    assert store.watcher_count("events") == 0
    assert store.watcher_count("chats/g1/messages") == 0


@pytest.mark.asyncio
async def test_chat_subscription_orders_messages(sync, service):
    seen: list[list] = []
    sub = sync.subscribe_chat("g1", seen.append)
    await wait_until(lambda: seen)
    assert seen[-1] == []

    await service.send_chat_message("g1", "a@example.com", "first")
    await service.send_chat_message("g1", "b@example.com", "second")
    await wait_until(lambda: len(seen[-1]) == 2)

    assert [m.message for m in seen[-1]] == ["first", "second"]
    await sub.aclose()


@pytest.mark.asyncio
async def test_anonymous_subscription_sees_everything(sync, service):
    await service.create_event(EventCreate(title="A", date="2026-06-01"), OWNER)
    await service.create_event(EventCreate(title="B", date="2026-06-01"), BOB)
    rec = Recorder()
    sub = sync.subscribe(rec.on_events, rec.on_groups, None)
    await wait_until(lambda: rec.events)
    assert len(rec.events[-1]) == 2
    await sub.aclose()
