"""Create/update/delete operations for events, groups, chat and user flags."""

from __future__ import annotations

import logging

from dateutil.parser import isoparse

from teamcal.domain.errors import NotFoundError, ValidationError
from teamcal.domain.models import (
    ChatMessage,
    Event,
    EventCreate,
    EventUpdate,
    Group,
    GroupCreate,
    UserVerification,
    utc_iso,
)
from teamcal.domain.principal import Viewer
from teamcal.repos.memory import (
    ChatRepository,
    EventRepository,
    GroupRepository,
    RealtimeStore,
    UserRepository,
)
from teamcal.services.sanitize import (
    dedupe_emails,
    is_valid_email,
    sanitize_description,
    sanitize_group_name,
    sanitize_message,
    sanitize_title,
)
from teamcal.services.visibility import (
    GroupMembershipIndex,
    filter_events,
    filter_groups,
)

logger = logging.getLogger(__name__)

# Stamped by the service; never taken from caller input.
_PROTECTED_FIELDS = {
    "id", "created_by", "createdBy", "created_at", "createdAt", "updated_at", "updatedAt",
}


# Patch keys that may not be cleared with an explicit null.
_NON_NULLABLE_PATCH_FIELDS = ("title", "date", "type", "completed", "assignedTo", "groupIds")


def _check_date(date: str) -> None:
    try:
        isoparse(date)
    except ValueError as exc:
        raise ValidationError(f"date must be an ISO-8601 date: {date!r}", field="date") from exc


def _check_emails(addresses: list[str], field: str) -> None:
    invalid = [a for a in addresses if a and a.strip() and not is_valid_email(a)]
    if invalid:
        raise ValidationError(f"Invalid email address(es): {', '.join(invalid)}", field=field)


class CalendarService:
    """Store-backed mutations. Store failures propagate as ``TransportError``."""

    def __init__(self, store: RealtimeStore) -> None:
        self.store = store
        self.event_repo = EventRepository(store)
        self.group_repo = GroupRepository(store)
        self.chat_repo = ChatRepository(store)
        self.user_repo = UserRepository(store)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def create_event(self, data: EventCreate, creator: Viewer | None = None) -> Event:
        """Persist a new event or todo.

        ``assigned_to`` becomes the explicit addresses followed by the members
        of every group in ``group_ids``, read fresh from the store, with
        case-insensitive duplicates removed. It is computed once here and not
        kept in sync with later membership changes.
        """
        title = sanitize_title(data.title)
        if not title:
            raise ValidationError("title is required", field="title")
        if not data.date or not data.date.strip():
            raise ValidationError("date is required", field="date")
        _check_date(data.date.strip())
        _check_emails(data.assigned_to, "assignedTo")

        group_members: list[str] = []
        if data.group_ids:
            groups = await self.group_repo.read_all()
            for group_id in data.group_ids:
                group = groups.get(group_id)
                if group is not None:
                    group_members.extend(group.members)

        now = utc_iso()
        fields = data.model_dump(
            exclude={"title", "date", "description", "assigned_to", *_PROTECTED_FIELDS}
        )
        event = Event(
            **fields,
            title=title,
            date=data.date.strip(),
            description=sanitize_description(data.description) or None,
            assigned_to=dedupe_emails(data.assigned_to, group_members),
            created_by=creator.token if creator else None,
            created_at=now,
            updated_at=now,
        )
        stored = await self.event_repo.add(event)
        logger.info(
            "Created %s %s assigned to %d member(s)",
            stored.kind, stored.id, len(stored.assigned_to),
        )
        return stored

    async def update_event(self, event_id: str, patch: EventUpdate) -> Event:
        """Merge the fields set on ``patch`` into the stored event.

        ``assigned_to`` changes only if the patch carries it; a new
        ``group_ids`` does not re-expand group members.
        """
        existing = await self.event_repo.get(event_id)
        if existing is None:
            raise NotFoundError(f"Event {event_id} not found", entity_id=event_id)

        fields = patch.to_patch()
        for key in _NON_NULLABLE_PATCH_FIELDS:
            if key in fields and fields[key] is None:
                raise ValidationError(f"{key} cannot be null", field=key)
        if "title" in fields:
            fields["title"] = sanitize_title(fields["title"])
            if not fields["title"]:
                raise ValidationError("title must not be empty", field="title")
        if "date" in fields:
            if not fields["date"]:
                raise ValidationError("date must not be empty", field="date")
            _check_date(fields["date"])
        if fields.get("description"):
            fields["description"] = sanitize_description(fields["description"])
        if "assignedTo" in fields:
            _check_emails(fields["assignedTo"], "assignedTo")
            fields["assignedTo"] = dedupe_emails(fields["assignedTo"])
        for protected in _PROTECTED_FIELDS:
            fields.pop(protected, None)
        fields["updatedAt"] = utc_iso()

        await self.event_repo.update(event_id, fields)
        logger.info("Updated event %s (%s)", event_id, ", ".join(sorted(fields)))
        updated = await self.event_repo.get(event_id)
        return updated if updated is not None else existing

    async def delete_event(self, event_id: str) -> bool:
        """Remove an event. Returns False (not an error) if it was already gone."""
        existing = await self.event_repo.get(event_id)
        if existing is None:
            logger.info("Delete of missing event %s treated as success", event_id)
            return False
        await self.event_repo.delete(event_id)
        logger.info("Deleted event %s", event_id)
        return True

    async def get_event(self, event_id: str) -> Event:
        event = await self.event_repo.get(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found", entity_id=event_id)
        return event

    async def get_events(self, viewer: Viewer | None = None) -> list[Event]:
        """One-shot read of the events the viewer can see."""
        groups = await self.group_repo.list_all()
        index = GroupMembershipIndex.build(groups, viewer)
        return filter_events(viewer, await self.event_repo.list_all(), index)

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def create_group(self, data: GroupCreate, creator: Viewer | None = None) -> Group:
        name = sanitize_group_name(data.name)
        if not name:
            raise ValidationError("name is required", field="name")
        _check_emails(data.members, "members")

        creator_member = [creator.email or creator.token] if creator and creator.token else []
        fields = data.model_dump(exclude={"name", "description", "members", *_PROTECTED_FIELDS})
        group = Group(
            **fields,
            name=name,
            description=sanitize_description(data.description) or None,
            members=dedupe_emails(data.members, creator_member),
            created_by=creator.token if creator else None,
            created_at=utc_iso(),
        )
        stored = await self.group_repo.add(group)
        logger.info("Created group %s with %d member(s)", stored.id, len(stored.members))
        return stored

    async def get_group(self, group_id: str) -> Group:
        group = await self.group_repo.get(group_id)
        if group is None:
            raise NotFoundError(f"Group {group_id} not found", entity_id=group_id)
        return group

    async def get_groups(self, viewer: Viewer | None = None) -> list[Group]:
        return filter_groups(viewer, await self.group_repo.list_all())

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def send_chat_message(self, group_id: str, sender: str, text: str) -> ChatMessage:
        message = sanitize_message(text)
        if not message:
            raise ValidationError("message is required", field="message")
        if not sender:
            raise ValidationError("sender is required", field="sender")
        stored = await self.chat_repo.add(
            ChatMessage(group_id=group_id, sender=sender, message=message, timestamp=utc_iso())
        )
        logger.debug("Chat message %s posted to group %s", stored.id, group_id)
        return stored

    async def get_chat_messages(self, group_id: str) -> list[ChatMessage]:
        return await self.chat_repo.list_for_group(group_id)

    # ------------------------------------------------------------------
    # User verification
    # ------------------------------------------------------------------

    async def set_user_email_verified(self, user_id: str, verified: bool = True) -> None:
        await self.user_repo.update_verification(
            user_id,
            {
                "emailVerified": verified,
                "emailVerifiedAt": utc_iso() if verified else None,
                "verifiedViaOTP": verified,
            },
        )

    async def get_user_verification_status(self, user_id: str) -> UserVerification | None:
        return await self.user_repo.get_verification(user_id)
