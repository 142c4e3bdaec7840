"""Membership-filtered live subscriptions over the events and groups feeds.

A :class:`SyncContext` is created once by the application root and handed to
whatever needs live data. Each :meth:`SyncContext.subscribe` call starts two
tasks, one per feed, that loop over :meth:`RealtimeStore.watch` and push
filtered lists to the consumer callbacks on the running event loop.

Invariants:
    - callbacks for one feed fire in the order the store delivered snapshots;
    - events are always filtered with the newest membership index seen so far;
    - once ``unsubscribe()`` returns no callback of that subscription runs;
    - a broken feed is reported once and then both feeds stop.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Any, Awaitable, Callable

from teamcal.domain.errors import TeamCalError, TransportError
from teamcal.domain.models import ChatMessage, Event, Group
from teamcal.domain.principal import Viewer
from teamcal.repos.memory import (
    EVENTS,
    GROUPS,
    RealtimeStore,
    chat_path,
    events_from_snapshot,
    groups_from_snapshot,
    messages_from_snapshot,
)
from teamcal.services.visibility import (
    GroupMembershipIndex,
    filter_events,
    filter_groups,
)

logger = logging.getLogger(__name__)

EventsCallback = Callable[[list[Event]], Any]
GroupsCallback = Callable[[list[Group]], Any]
MessagesCallback = Callable[[list[ChatMessage]], Any]
ErrorCallback = Callable[[TeamCalError], Any]


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class Subscription:
    """Handle for one live subscription. Dispose with :meth:`unsubscribe`."""

    def __init__(self, name: str, on_error: ErrorCallback | None = None) -> None:
        self.name = name
        self._on_error = on_error
        self._tasks: list[asyncio.Task] = []
        self._closed = False
        self._failed = False
        self._on_close: list[Callable[[], None]] = []

    @property
    def active(self) -> bool:
        return not self._closed

    def _start(self, coro: Awaitable[None]) -> None:
        self._tasks.append(asyncio.create_task(coro, name=f"{self.name}-feed"))

    def _deliver(self, callback: Callable, payload: Any) -> None:
        if self._closed:
            return
        try:
            callback(payload)
        except Exception:
            logger.exception("Subscriber callback for %s raised", self.name)

    def _fail(self, error: TeamCalError) -> None:
        """Report the first feed failure and stop every feed."""
        if self._closed or self._failed:
            return
        self._failed = True
        logger.error("Live feed %s failed: %s", self.name, error.message)
        if self._on_error is not None:
            self._deliver(self._on_error, error)
        self.unsubscribe()

    def unsubscribe(self) -> None:
        """Stop both feeds. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        current = _current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        for hook in self._on_close:
            hook()
        self._on_close.clear()
        logger.debug("Subscription %s closed", self.name)

    async def aclose(self) -> None:
        """Unsubscribe and wait for the feed tasks to wind down."""
        self.unsubscribe()
        current = _current_task()
        pending = [t for t in self._tasks if t is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def __call__(self) -> None:
        self.unsubscribe()


class SyncContext:
    """Owns the live subscriptions for one application instance."""

    def __init__(self, store: RealtimeStore) -> None:
        self.store = store
        self._subscriptions: set[Subscription] = set()

    def _track(self, sub: Subscription) -> None:
        self._subscriptions.add(sub)
        sub._on_close.append(lambda: self._subscriptions.discard(sub))

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        on_events: EventsCallback,
        on_groups: GroupsCallback,
        viewer: Viewer | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Start the events and groups feeds for ``viewer``.

        Must be called from within a running event loop.
        """
        sub = Subscription(name=f"calendar:{viewer.token if viewer else '*'}", on_error=on_error)
        state = {"index": GroupMembershipIndex.pending()}

        async def groups_feed() -> None:
            async with aclosing(self.store.watch(GROUPS)) as snapshots:
                async for snapshot in snapshots:
                    if not sub.active:
                        return
                    groups = groups_from_snapshot(snapshot)
                    state["index"] = GroupMembershipIndex.build(groups, viewer)
                    sub._deliver(on_groups, filter_groups(viewer, groups))

        async def events_feed() -> None:
            async with aclosing(self.store.watch(EVENTS)) as snapshots:
                async for snapshot in snapshots:
                    if not sub.active:
                        return
                    events = events_from_snapshot(snapshot)
                    sub._deliver(on_events, filter_events(viewer, events, state["index"]))

        sub._start(self._run_feed(sub, GROUPS, groups_feed))
        sub._start(self._run_feed(sub, EVENTS, events_feed))
        self._track(sub)
        return sub

    def subscribe_chat(
        self,
        group_id: str,
        on_messages: MessagesCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Stream a group's chat messages, oldest first."""
        path = chat_path(group_id)
        sub = Subscription(name=f"chat:{group_id}", on_error=on_error)

        async def messages_feed() -> None:
            async with aclosing(self.store.watch(path)) as snapshots:
                async for snapshot in snapshots:
                    if not sub.active:
                        return
                    sub._deliver(on_messages, messages_from_snapshot(snapshot))

        sub._start(self._run_feed(sub, path, messages_feed))
        self._track(sub)
        return sub

    async def _run_feed(
        self, sub: Subscription, path: str, feed: Callable[[], Awaitable[None]]
    ) -> None:
        try:
            await feed()
        except asyncio.CancelledError:
            raise
        except TeamCalError as exc:
            sub._fail(exc)
        except Exception as exc:
            sub._fail(TransportError(f"Feed for {path} failed: {exc}"))

    async def aclose(self) -> None:
        """Tear down every live subscription (application shutdown)."""
        subs = list(self._subscriptions)
        await asyncio.gather(*(s.aclose() for s in subs), return_exceptions=True)
        logger.info("Closed %d live subscription(s)", len(subs))
