"""Notification side-channel: EmailJS transport and per-kind templates.

Email is best effort. :meth:`Notifier.notify` never raises; every recipient
gets one independent attempt and the caller receives a
:class:`NotificationOutcome` with sent/failed counts.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from dateutil.parser import isoparse

from teamcal.config import Settings
from teamcal.domain.errors import ConfigurationError, TransportError
from teamcal.domain.models import Event, Group, NotificationKind, NotificationOutcome

logger = logging.getLogger(__name__)

SUCCESS_SENTINEL = "OK"


def _mask(email: str) -> str:
    return email[:3] + "***"


class EmailJsTransport:
    """One HTTP POST per email to the EmailJS send endpoint."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._client = client
        self._owns_client = client is None

    @property
    def configured(self) -> bool:
        return self.settings.email_configured

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.EMAIL_TIMEOUT_SECONDS)
        return self._client

    async def send(self, template_id: str, template_params: dict[str, Any]) -> None:
        """Send one email. Raises ``TransportError`` unless the endpoint accepts it."""
        if not self.configured:
            raise ConfigurationError("EmailJS service id / user id are not configured")

        payload = {
            "service_id": self.settings.EMAILJS_SERVICE_ID,
            "template_id": template_id,
            "user_id": self.settings.EMAILJS_USER_ID,
            "template_params": template_params,
        }
        try:
            resp = await self._get_client().post(self.settings.EMAILJS_API_URL, json=payload)
        except httpx.HTTPError as exc:
            raise TransportError(f"EmailJS request failed: {exc}") from exc

        body = resp.text.strip()
        if resp.is_success and body in ("", SUCCESS_SENTINEL):
            return
        raise TransportError(body or f"EmailJS returned {resp.status_code}", resp.status_code)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# Template parameters
# ---------------------------------------------------------------------------


def format_event_date(date: str | None) -> str:
    if not date:
        return "TBD"
    try:
        moment = isoparse(date)
    except ValueError:
        return date
    return f"{moment.month}/{moment.day}/{moment.year}"


def format_event_time(date: str | None) -> str:
    if not date or "T" not in date:
        return "All day"
    try:
        return isoparse(date).strftime("%H:%M")
    except ValueError:
        return "All day"


def _recipient_params(recipient: str) -> dict[str, str]:
    # Templates differ in which key they read the recipient from.
    return {
        "to_email": recipient,
        "user_email": recipient,
        "email": recipient,
        "reply_to": recipient,
    }


def build_template_params(
    kind: NotificationKind,
    entity: Event | Group,
    recipient: str,
    actor_name: str,
) -> dict[str, str]:
    params = _recipient_params(recipient)

    if kind == NotificationKind.GROUP_INVITATION:
        params.update(
            group_name=entity.name or "Untitled Group",
            group_description=entity.description or "No description provided",
            inviter_name=actor_name,
        )
        return params

    if kind == NotificationKind.TODO_CREATED:
        params.update(
            todo_title=entity.title or "Untitled Todo",
            todo_date=format_event_date(entity.date),
            todo_description=entity.description or "No description provided",
            creator_name=actor_name,
        )
        return params

    params.update(
        event_title=entity.title or "Untitled Event",
        event_date=format_event_date(entity.date),
        event_time=format_event_time(entity.date),
        event_description=entity.description or "No description provided",
        event_location=entity.location or "Not specified",
    )
    if kind == NotificationKind.EVENT_UPDATED:
        params["updater_name"] = actor_name
    elif kind == NotificationKind.EVENT_REMINDER:
        params["reminder_message"] = "This is a reminder that your event starts in 5 minutes!"
    else:
        params["creator_name"] = actor_name
    return params


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


class Notifier:
    """Fans one notification out to every recipient and tallies the results."""

    def __init__(self, transport: EmailJsTransport, settings: Settings) -> None:
        self.transport = transport
        self.settings = settings

    def template_for(self, kind: NotificationKind) -> str:
        if kind == NotificationKind.EVENT_REMINDER:
            return self.settings.EMAILJS_EVENT_REMINDER_TEMPLATE
        return self.settings.EMAILJS_EVENT_CREATED_TEMPLATE

    async def notify(
        self,
        kind: NotificationKind,
        entity: Event | Group,
        recipients: list[str],
        actor_name: str = "A user",
    ) -> NotificationOutcome:
        if not recipients:
            return NotificationOutcome(kind=kind, skipped=True)
        if not self.transport.configured:
            logger.warning("EmailJS not configured, skipping %s email", kind)
            return NotificationOutcome(
                kind=kind,
                skipped=True,
                errors=["Email transport is not configured"],
            )

        template_id = self.template_for(kind)
        results = await asyncio.gather(
            *(
                self.transport.send(
                    template_id,
                    build_template_params(kind, entity, recipient, actor_name),
                )
                for recipient in recipients
            ),
            return_exceptions=True,
        )

        outcome = NotificationOutcome(kind=kind)
        for recipient, result in zip(recipients, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                outcome.failed += 1
                message = result.message if isinstance(result, TransportError) else str(result)
                outcome.errors.append(message)
                logger.warning("Failed to send %s email to %s: %s", kind, _mask(recipient), message)
            else:
                outcome.sent += 1

        logger.info("%s emails: %d sent, %d failed", kind, outcome.sent, outcome.failed)
        return outcome
