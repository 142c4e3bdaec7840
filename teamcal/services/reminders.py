"""Scheduled scan that emails a reminder shortly before an event starts."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from dateutil.parser import isoparse

from teamcal.domain.models import (
    Event,
    EventKind,
    NotificationKind,
    ReminderScanResult,
    utc_iso,
)
from teamcal.repos.memory import EventRepository, RealtimeStore, ReminderRepository
from teamcal.services.email import Notifier

logger = logging.getLogger(__name__)

DEFAULT_LEAD_MINUTES = 5
DEFAULT_WINDOW_MINUTES = 1


def event_start(event: Event) -> datetime | None:
    """Start time as an aware UTC datetime. Date-only and naive values are UTC."""
    if not event.date:
        return None
    try:
        start = isoparse(event.date)
    except ValueError:
        return None
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return start


def is_due(
    event: Event,
    now: datetime,
    lead_minutes: int = DEFAULT_LEAD_MINUTES,
    window_minutes: int = DEFAULT_WINDOW_MINUTES,
) -> bool:
    """True if ``event`` starts between (lead - window) and lead minutes after ``now``."""
    if event.kind != EventKind.EVENT:
        return False
    start = event_start(event)
    if start is None:
        return False
    until_start = start - now
    return (
        timedelta(minutes=lead_minutes - window_minutes)
        <= until_start
        <= timedelta(minutes=lead_minutes)
    )


class ReminderScanner:
    """Run once a minute. Each event is reminded at most once.

    The idempotency record ``reminders/<eventId>`` is checked before and
    written before any email goes out, so a rerun (or an overlapping run)
    never sends a second reminder for the same event.
    """

    def __init__(
        self,
        store: RealtimeStore,
        notifier: Notifier,
        lead_minutes: int = DEFAULT_LEAD_MINUTES,
        window_minutes: int = DEFAULT_WINDOW_MINUTES,
    ) -> None:
        self.event_repo = EventRepository(store)
        self.reminder_repo = ReminderRepository(store)
        self.notifier = notifier
        self.lead_minutes = lead_minutes
        self.window_minutes = window_minutes

    async def _claim(self, event: Event, now: datetime) -> bool:
        if await self.reminder_repo.get(event.id) is not None:
            return False
        await self.reminder_repo.mark_sent(event.id, utc_iso(now))
        return True

    async def scan(self, now: datetime | None = None) -> ReminderScanResult:
        current_time = now or datetime.now(timezone.utc)
        if current_time.tzinfo is None:
            current_time = current_time.replace(tzinfo=timezone.utc)

        result = ReminderScanResult()
        due = [
            e
            for e in await self.event_repo.list_all()
            if is_due(e, current_time, self.lead_minutes, self.window_minutes)
        ]

        to_remind: list[Event] = []
        for event in due:
            try:
                if await self._claim(event, current_time):
                    to_remind.append(event)
            except Exception:
                logger.exception("Error processing event %s", event.id)

        if not to_remind:
            logger.info("No events need reminders at this time")
            return result

        logger.info("Found %d event(s) to send reminders for", len(to_remind))
        for event in to_remind:
            result.reminded_event_ids.append(event.id)
            if not event.assigned_to:
                logger.info("Event %s has no assigned members, skipping reminder", event.id)
                continue
            result.outcomes[event.id] = await self.notifier.notify(
                NotificationKind.EVENT_REMINDER, event, event.assigned_to
            )
        return result
