"""In-memory realtime store and the repositories built on top of it.

The store mimics a hierarchical realtime database: values live under
slash-separated paths (``events/<id>``, ``chats/<groupId>/messages/<id>``),
writes are merged at the record level, and :meth:`RealtimeStore.watch`
streams full snapshots of a collection on every change beneath it.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
import time
from typing import Any, AsyncIterator

from teamcal.domain.bus import ChangeBus
from teamcal.domain.errors import TransportError
from teamcal.domain.events import CollectionChanged, FeedFailed
from teamcal.domain.models import (
    ChatMessage,
    Event,
    Group,
    ReminderRecord,
    UserVerification,
)

logger = logging.getLogger(__name__)

EVENTS = "events"
GROUPS = "groups"
USERS = "users"
REMINDERS = "reminders"


def chat_path(group_id: str) -> str:
    return f"chats/{group_id}/messages"


def _split(path: str) -> list[str]:
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts:
        raise ValueError("path must not be empty")
    return parts


def _overlaps(written: str, watched: str) -> bool:
    return (
        written == watched
        or written.startswith(watched + "/")
        or watched.startswith(written + "/")
    )


class RealtimeStore:
    """Dict-backed hierarchical store with live collection feeds."""

    def __init__(self, bus: ChangeBus | None = None) -> None:
        self._root: dict[str, Any] = {}
        self._bus = bus or ChangeBus()
        self._watched: dict[str, int] = {}
        self._counter = itertools.count()
        self._pending_failure: Exception | None = None

    # ------------------------------------------------------------------
    # Keys and raw access
    # ------------------------------------------------------------------

    def push_key(self) -> str:
        """Unique key that sorts in creation order."""
        millis = int(time.time() * 1000)
        return f"{millis:012x}{next(self._counter):06x}"

    def _raise_pending(self) -> None:
        if self._pending_failure is not None:
            exc, self._pending_failure = self._pending_failure, None
            raise exc

    def _lookup(self, path: str) -> Any:
        node: Any = self._root
        for part in _split(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _parent(self, path: str, create: bool) -> tuple[dict | None, str]:
        parts = _split(path)
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                if not create:
                    return None, parts[-1]
                child = node[part] = {}
            node = child
        return node, parts[-1]

    def _prune(self, path: str) -> None:
        """Drop empty parent containers, as the realtime database does."""
        parts = _split(path)
        for depth in range(len(parts) - 1, 0, -1):
            parent_path = "/".join(parts[:depth])
            node = self._lookup(parent_path)
            if isinstance(node, dict) and not node:
                parent, key = self._parent(parent_path, create=False)
                if parent is not None:
                    parent.pop(key, None)
            else:
                break

    # ------------------------------------------------------------------
    # Async operations
    # ------------------------------------------------------------------

    async def get(self, path: str) -> Any:
        self._raise_pending()
        return copy.deepcopy(self._lookup(path))

    async def set(self, path: str, value: Any) -> None:
        self._raise_pending()
        if value is None:
            self._delete(path)
        else:
            parent, key = self._parent(path, create=True)
            parent[key] = copy.deepcopy(value)
        self._notify(path)

    async def update(self, path: str, patch: dict[str, Any]) -> None:
        """Merge ``patch`` into the record at ``path``. ``None`` values delete."""
        self._raise_pending()
        parent, key = self._parent(path, create=True)
        current = parent.get(key)
        if not isinstance(current, dict):
            current = parent[key] = {}
        for field, value in patch.items():
            if value is None:
                current.pop(field, None)
            else:
                current[field] = copy.deepcopy(value)
        if not current:
            self._delete(path)
        self._notify(path)

    async def remove(self, path: str) -> None:
        self._raise_pending()
        self._delete(path)
        self._notify(path)

    def _delete(self, path: str) -> None:
        parent, key = self._parent(path, create=False)
        if parent is not None:
            parent.pop(key, None)
            self._prune(path)

    # ------------------------------------------------------------------
    # Live feeds
    # ------------------------------------------------------------------

    def snapshot(self, path: str) -> dict[str, Any]:
        value = self._lookup(path)
        if not isinstance(value, dict):
            return {}
        return {key: copy.deepcopy(value[key]) for key in sorted(value)}

    def _notify(self, written: str) -> None:
        for watched in list(self._watched):
            if _overlaps(written, watched):
                self._bus.publish(
                    watched,
                    CollectionChanged(path=watched, snapshot=self.snapshot(watched)),
                )

    async def watch(self, path: str) -> AsyncIterator[dict[str, Any]]:
        """Yield the current contents of ``path``, then again after every change.

        Raises :class:`TransportError` if the feed breaks.
        """
        queue: asyncio.Queue = asyncio.Queue()
        unsubscribe = self._bus.subscribe(path, queue.put_nowait)
        self._watched[path] = self._watched.get(path, 0) + 1
        queue.put_nowait(CollectionChanged(path=path, snapshot=self.snapshot(path)))
        try:
            while True:
                change = await queue.get()
                if isinstance(change, FeedFailed):
                    raise TransportError(f"Feed for {path} failed: {change.reason}")
                yield change.snapshot
        finally:
            unsubscribe()
            self._watched[path] -= 1
            if not self._watched[path]:
                del self._watched[path]

    def watcher_count(self, path: str) -> int:
        return self._bus.subscriber_count(path)

    # ------------------------------------------------------------------
    # Testing helpers
    # ------------------------------------------------------------------

    def inject_failure(self, exception: Exception) -> None:
        """Make the next get/set/update/remove raise ``exception``."""
        self._pending_failure = exception

    def fail_feed(self, path: str, reason: str = "connection lost") -> None:
        """Break every live feed on ``path``."""
        logger.debug("Failing live feeds on %s: %s", path, reason)
        self._bus.publish(path, FeedFailed(path=path, reason=reason))


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


def events_from_snapshot(snapshot: dict[str, Any] | None) -> list[Event]:
    return [Event.from_record(eid, rec) for eid, rec in (snapshot or {}).items()]


def groups_from_snapshot(snapshot: dict[str, Any] | None) -> list[Group]:
    return [Group.from_record(gid, rec) for gid, rec in (snapshot or {}).items()]


def messages_from_snapshot(snapshot: dict[str, Any] | None) -> list[ChatMessage]:
    """Messages ordered by timestamp; push-key order breaks ties."""
    ordered = sorted((snapshot or {}).items(), key=lambda kv: kv[0])
    messages = [ChatMessage.from_record(mid, rec) for mid, rec in ordered]
    return sorted(messages, key=lambda m: m.timestamp)


class EventRepository:
    """Events stored under ``events/<id>``."""

    def __init__(self, store: RealtimeStore) -> None:
        self.store = store

    async def add(self, event: Event) -> Event:
        event_id = self.store.push_key()
        await self.store.set(f"{EVENTS}/{event_id}", event.to_record())
        return event.model_copy(update={"id": event_id})

    async def get(self, event_id: str) -> Event | None:
        record = await self.store.get(f"{EVENTS}/{event_id}")
        if record is None:
            return None
        return Event.from_record(event_id, record)

    async def list_all(self) -> list[Event]:
        return events_from_snapshot(await self.store.get(EVENTS))

    async def update(self, event_id: str, patch: dict[str, Any]) -> None:
        await self.store.update(f"{EVENTS}/{event_id}", patch)

    async def delete(self, event_id: str) -> None:
        await self.store.remove(f"{EVENTS}/{event_id}")


class GroupRepository:
    """Groups stored under ``groups/<id>``."""

    def __init__(self, store: RealtimeStore) -> None:
        self.store = store

    async def add(self, group: Group) -> Group:
        group_id = self.store.push_key()
        await self.store.set(f"{GROUPS}/{group_id}", group.to_record())
        return group.model_copy(update={"id": group_id})

    async def get(self, group_id: str) -> Group | None:
        record = await self.store.get(f"{GROUPS}/{group_id}")
        if record is None:
            return None
        return Group.from_record(group_id, record)

    async def list_all(self) -> list[Group]:
        return groups_from_snapshot(await self.store.get(GROUPS))

    async def read_all(self) -> dict[str, Group]:
        return {g.id: g for g in await self.list_all()}


class ChatRepository:
    """Messages stored under ``chats/<groupId>/messages/<id>``."""

    def __init__(self, store: RealtimeStore) -> None:
        self.store = store

    async def add(self, message: ChatMessage) -> ChatMessage:
        message_id = self.store.push_key()
        await self.store.set(
            f"{chat_path(message.group_id)}/{message_id}", message.to_record()
        )
        return message.model_copy(update={"id": message_id})

    async def list_for_group(self, group_id: str) -> list[ChatMessage]:
        return messages_from_snapshot(await self.store.get(chat_path(group_id)))


class UserRepository:
    """Per-user verification flags under ``users/<id>``."""

    def __init__(self, store: RealtimeStore) -> None:
        self.store = store

    async def update_verification(self, user_id: str, patch: dict[str, Any]) -> None:
        await self.store.update(f"{USERS}/{user_id}", patch)

    async def get_verification(self, user_id: str) -> UserVerification | None:
        record = await self.store.get(f"{USERS}/{user_id}")
        if record is None:
            return None
        return UserVerification.from_record(user_id, record)


class ReminderRepository:
    """Reminder idempotency records under ``reminders/<eventId>``."""

    def __init__(self, store: RealtimeStore) -> None:
        self.store = store

    async def get(self, event_id: str) -> ReminderRecord | None:
        record = await self.store.get(f"{REMINDERS}/{event_id}")
        if record is None:
            return None
        return ReminderRecord.from_record(event_id, record)

    async def mark_sent(self, event_id: str, sent_at: str) -> ReminderRecord:
        record = ReminderRecord(event_id=event_id, sent_at=sent_at)
        await self.store.set(f"{REMINDERS}/{event_id}", record.to_record())
        return record.model_copy(update={"id": event_id})
