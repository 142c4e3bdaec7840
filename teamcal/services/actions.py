"""User-facing actions: commit a mutation, then notify the people involved.

The mutation always commits first. Email runs afterwards and can only add a
warning to the result; it never turns a committed mutation into a failure.
"""

from __future__ import annotations

import logging

from teamcal.domain.models import (
    Event,
    EventCreate,
    EventKind,
    EventUpdate,
    Group,
    GroupCreate,
    MutationResult,
    NotificationKind,
    NotificationOutcome,
)
from teamcal.domain.principal import Viewer
from teamcal.services.calendar import CalendarService
from teamcal.services.email import Notifier

logger = logging.getLogger(__name__)


def display_name(viewer: Viewer | None, name: str | None = None) -> str:
    if name:
        return name
    if viewer is not None and viewer.email:
        return viewer.email.split("@")[0]
    return "A user"


def _summarize(
    committed: str,
    outcome: NotificationOutcome | None,
    recipients: int,
) -> tuple[str, str | None]:
    """(message, warning) for a committed mutation and its email outcome."""
    if outcome is None:
        return f"{committed} successfully!", None
    if outcome.skipped:
        if recipients == 0:
            return (
                f"{committed} successfully! No email notifications sent (no assigned members)",
                None,
            )
        return f"{committed} successfully!", "Email notifications are not configured"
    if outcome.failed == 0:
        return f"{committed}! Email notifications sent to {outcome.sent} member(s)", None
    errors = "; ".join(dict.fromkeys(outcome.errors)) or "Unknown error occurred"
    warning = f"Email failed for {outcome.failed} of {outcome.attempted} member(s): {errors}"
    return f"{committed}! Email failed: {errors}", warning


class CalendarActions:
    def __init__(self, service: CalendarService, notifier: Notifier) -> None:
        self.service = service
        self.notifier = notifier

    async def create_event(
        self,
        data: EventCreate,
        creator: Viewer | None,
        creator_name: str | None = None,
    ) -> MutationResult[Event]:
        event = await self.service.create_event(data, creator)
        kind = (
            NotificationKind.TODO_CREATED
            if event.kind == EventKind.TODO
            else NotificationKind.EVENT_CREATED
        )
        outcome = await self.notifier.notify(
            kind, event, event.assigned_to, display_name(creator, creator_name)
        )
        label = "Todo created" if event.kind == EventKind.TODO else "Event created"
        message, warning = _summarize(label, outcome, len(event.assigned_to))
        return MutationResult[Event](
            record=event, message=message, notification=outcome, warning=warning
        )

    async def update_event(
        self,
        event_id: str,
        patch: EventUpdate,
        updater: Viewer | None,
        updater_name: str | None = None,
    ) -> MutationResult[Event]:
        """Apply ``patch``. Only a patch that names ``assigned_to`` notifies,
        and todos are never re-notified on update."""
        event = await self.service.update_event(event_id, patch)
        recipients = patch.assigned_to or []
        outcome = None
        if recipients and event.kind != EventKind.TODO:
            outcome = await self.notifier.notify(
                NotificationKind.EVENT_UPDATED,
                event,
                recipients,
                display_name(updater, updater_name),
            )
        message, warning = _summarize("Event updated", outcome, len(recipients))
        return MutationResult[Event](
            record=event, message=message, notification=outcome, warning=warning
        )

    async def delete_event(self, event_id: str) -> MutationResult[str]:
        existed = await self.service.delete_event(event_id)
        message = "Event deleted successfully!" if existed else "Event already deleted"
        return MutationResult[str](record=event_id, message=message)

    async def create_group(
        self,
        data: GroupCreate,
        creator: Viewer | None,
        creator_name: str | None = None,
    ) -> MutationResult[Group]:
        group = await self.service.create_group(data, creator)
        invitees = [m for m in group.members if creator is None or not creator.matches(m)]
        outcome = None
        if invitees:
            outcome = await self.notifier.notify(
                NotificationKind.GROUP_INVITATION,
                group,
                invitees,
                display_name(creator, creator_name),
            )
        message, warning = _summarize("Group created", outcome, len(invitees))
        return MutationResult[Group](
            record=group, message=message, notification=outcome, warning=warning
        )
