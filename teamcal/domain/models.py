"""Domain models for events, groups, chat and notifications.

Records are stored with camelCase keys (``assignedTo``, ``groupIds`` ...) and
may carry arbitrary extra fields, which are preserved on read and write.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class EventKind(StrEnum):
    EVENT = "event"
    TODO = "todo"


class NotificationKind(StrEnum):
    EVENT_CREATED = "event-created"
    EVENT_UPDATED = "event-updated"
    TODO_CREATED = "todo-created"
    GROUP_INVITATION = "group-invitation"
    EVENT_REMINDER = "event-reminder"


def utc_iso(moment: datetime | None = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    moment = moment or datetime.now(timezone.utc)
    return (
        moment.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


class StoreModel(BaseModel):
    """Base for anything persisted in the realtime store."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_record(self) -> dict[str, Any]:
        """Serialize for the store. The id is the key, not part of the value."""
        return self.model_dump(by_alias=True, exclude={"id"}, mode="json")

    @classmethod
    def from_record(cls, record_id: str, record: dict[str, Any]):
        return cls.model_validate({**record, "id": record_id})


# ---------------------------------------------------------------------------
# Core domain models
# ---------------------------------------------------------------------------


class Event(StoreModel):
    id: str | None = None
    title: str = ""
    date: str = ""
    description: str | None = None
    location: str | None = None
    kind: EventKind = Field(default=EventKind.EVENT, alias="type")
    completed: bool = False
    assigned_to: list[str] = Field(default_factory=list)
    group_ids: list[str] = Field(default_factory=list)
    created_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class Group(StoreModel):
    id: str | None = None
    name: str = ""
    description: str | None = None
    members: list[str] = Field(default_factory=list)
    created_by: str | None = None
    created_at: str | None = None


class ChatMessage(StoreModel):
    id: str | None = None
    group_id: str
    sender: str
    message: str
    timestamp: str


class UserVerification(StoreModel):
    id: str | None = None
    email_verified: bool = False
    email_verified_at: str | None = None
    verified_via_otp: bool = Field(default=False, alias="verifiedViaOTP")


class ReminderRecord(StoreModel):
    """Idempotency marker written before a reminder is dispatched."""

    id: str | None = None
    event_id: str
    sent_at: str


class OtpRecord(StoreModel):
    email: str
    otp: str
    expiry_time: int
    attempts: int = 0
    max_attempts: int = 5


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class NotificationOutcome(BaseModel):
    kind: NotificationKind
    sent: int = 0
    failed: int = 0
    skipped: bool = False
    errors: list[str] = Field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.sent + self.failed


RecordT = TypeVar("RecordT")


class MutationResult(BaseModel, Generic[RecordT]):
    """A committed mutation plus whatever happened on the email side-channel.

    ``success`` reflects the mutation only; a failed notification shows up as
    ``warning``.
    """

    record: RecordT
    success: bool = True
    message: str
    notification: NotificationOutcome | None = None
    warning: str | None = None


class VerificationResult(BaseModel):
    valid: bool
    message: str


class OtpSendResult(BaseModel):
    success: bool
    message: str


class ReminderScanResult(BaseModel):
    reminded_event_ids: list[str] = Field(default_factory=list)
    outcomes: dict[str, NotificationOutcome] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Request DTOs
# ---------------------------------------------------------------------------


class EventCreate(StoreModel):
    """Fields a caller may supply when creating an event or todo.

    ``title`` and ``date`` are checked by the service so that a missing value
    raises :class:`~teamcal.domain.errors.ValidationError` before any write.
    """

    title: str = ""
    date: str = ""
    description: str | None = None
    location: str | None = None
    kind: EventKind = Field(default=EventKind.EVENT, alias="type")
    completed: bool = False
    assigned_to: list[str] = Field(default_factory=list)
    group_ids: list[str] = Field(default_factory=list)


class EventUpdate(StoreModel):
    """Partial update. Only fields explicitly set are written."""

    title: str | None = None
    date: str | None = None
    description: str | None = None
    location: str | None = None
    kind: EventKind | None = Field(default=None, alias="type")
    completed: bool | None = None
    assigned_to: list[str] | None = None
    group_ids: list[str] | None = None

    def to_patch(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True, mode="json")


class GroupCreate(StoreModel):
    name: str = ""
    description: str | None = None
    members: list[str] = Field(default_factory=list)


class ChatMessageCreate(BaseModel):
    message: str


class OtpSendRequest(BaseModel):
    email: str
    user_name: str | None = None


class OtpVerifyRequest(BaseModel):
    email: str
    otp: str
    user_id: str | None = None
