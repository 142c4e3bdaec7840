"""Application-wide object graph, built once at startup and closed at shutdown."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from teamcal.config import Settings
from teamcal.domain.bus import ChangeBus
from teamcal.repos.memory import RealtimeStore
from teamcal.services.actions import CalendarActions
from teamcal.services.calendar import CalendarService
from teamcal.services.email import EmailJsTransport, Notifier
from teamcal.services.otp import OtpService
from teamcal.services.reminders import ReminderScanner
from teamcal.services.subscriptions import SyncContext

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    store: RealtimeStore
    sync: SyncContext
    calendar: CalendarService
    actions: CalendarActions
    notifier: Notifier
    transport: EmailJsTransport
    reminders: ReminderScanner
    otp: OtpService

    async def aclose(self) -> None:
        await self.sync.aclose()
        await self.transport.aclose()
        logger.info("Application context closed")


def build_context(
    settings: Settings,
    store: RealtimeStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AppContext:
    store = store or RealtimeStore(ChangeBus())
    transport = EmailJsTransport(settings, client=http_client)
    notifier = Notifier(transport, settings)
    calendar = CalendarService(store)
    return AppContext(
        settings=settings,
        store=store,
        sync=SyncContext(store),
        calendar=calendar,
        actions=CalendarActions(calendar, notifier),
        notifier=notifier,
        transport=transport,
        reminders=ReminderScanner(
            store,
            notifier,
            lead_minutes=settings.REMINDER_LEAD_MINUTES,
            window_minutes=settings.REMINDER_WINDOW_MINUTES,
        ),
        otp=OtpService(transport, settings),
    )
