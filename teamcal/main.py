"""FastAPI application: entry point for the group calendar service."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from teamcal.config import Settings, settings as default_settings
from teamcal.context import AppContext, build_context
from teamcal.domain.errors import (
    NotFoundError,
    TeamCalError,
    TransportError,
    ValidationError,
)
from teamcal.domain.models import (
    ChatMessage,
    ChatMessageCreate,
    Event,
    EventCreate,
    EventUpdate,
    Group,
    GroupCreate,
    MutationResult,
    OtpSendRequest,
    OtpSendResult,
    OtpVerifyRequest,
    ReminderScanResult,
    UserVerification,
    VerificationResult,
)
from teamcal.domain.principal import Viewer

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: dict[type[TeamCalError], int] = {
    ValidationError: 422,
    NotFoundError: 404,
    TransportError: 502,
}


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


def current_viewer(
    x_user_id: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
) -> Viewer:
    """Identity comes from the upstream auth provider via headers."""
    return Viewer.of(user_id=x_user_id, email=x_user_email)


def create_app(context: AppContext | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or (context.settings if context else default_settings)
    ctx = context or build_context(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.LOG_LEVEL,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
        if not settings.email_configured:
            logger.warning("EmailJS is not configured; notifications will be skipped")
        yield
        await ctx.aclose()

    app = FastAPI(title="Group Calendar Service", lifespan=lifespan)
    app.state.ctx = ctx

    @app.exception_handler(TeamCalError)
    async def teamcal_error_handler(request: Request, exc: TeamCalError) -> JSONResponse:
        status = next(
            (code for cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 500
        )
        body = {"detail": exc.message, "code": exc.code}
        if isinstance(exc, ValidationError) and exc.field:
            body["field"] = exc.field
        return JSONResponse(status_code=status, content=body)

    # ── Events ────────────────────────────────────────────────────────

    @app.get("/events", response_model=list[Event])
    async def list_events(
        viewer: Viewer = Depends(current_viewer),
        ctx: AppContext = Depends(get_context),
    ) -> list[Event]:
        """Return the events visible to the caller."""
        return await ctx.calendar.get_events(viewer)

    @app.post("/events", response_model=MutationResult[Event])
    async def create_event(
        payload: EventCreate,
        viewer: Viewer = Depends(current_viewer),
        ctx: AppContext = Depends(get_context),
    ) -> MutationResult[Event]:
        return await ctx.actions.create_event(payload, viewer)

    @app.get("/events/{event_id}", response_model=Event)
    async def get_event(event_id: str, ctx: AppContext = Depends(get_context)) -> Event:
        return await ctx.calendar.get_event(event_id)

    @app.patch("/events/{event_id}", response_model=MutationResult[Event])
    async def update_event(
        event_id: str,
        payload: EventUpdate,
        viewer: Viewer = Depends(current_viewer),
        ctx: AppContext = Depends(get_context),
    ) -> MutationResult[Event]:
        return await ctx.actions.update_event(event_id, payload, viewer)

    @app.delete("/events/{event_id}", response_model=MutationResult[str])
    async def delete_event(
        event_id: str, ctx: AppContext = Depends(get_context)
    ) -> MutationResult[str]:
        """Delete an event. Deleting an already-missing event succeeds."""
        return await ctx.actions.delete_event(event_id)

    # ── Groups and chat ───────────────────────────────────────────────

    @app.get("/groups", response_model=list[Group])
    async def list_groups(
        viewer: Viewer = Depends(current_viewer),
        ctx: AppContext = Depends(get_context),
    ) -> list[Group]:
        return await ctx.calendar.get_groups(viewer)

    @app.post("/groups", response_model=MutationResult[Group])
    async def create_group(
        payload: GroupCreate,
        viewer: Viewer = Depends(current_viewer),
        ctx: AppContext = Depends(get_context),
    ) -> MutationResult[Group]:
        return await ctx.actions.create_group(payload, viewer)

    @app.get("/groups/{group_id}/messages", response_model=list[ChatMessage])
    async def list_messages(
        group_id: str, ctx: AppContext = Depends(get_context)
    ) -> list[ChatMessage]:
        await ctx.calendar.get_group(group_id)
        return await ctx.calendar.get_chat_messages(group_id)

    @app.post("/groups/{group_id}/messages", response_model=ChatMessage)
    async def send_message(
        group_id: str,
        payload: ChatMessageCreate,
        viewer: Viewer = Depends(current_viewer),
        ctx: AppContext = Depends(get_context),
    ) -> ChatMessage:
        await ctx.calendar.get_group(group_id)
        sender = viewer.email or viewer.token
        if not sender:
            raise ValidationError("sender identity is required", field="sender")
        return await ctx.calendar.send_chat_message(group_id, sender, payload.message)

    # ── Reminders ─────────────────────────────────────────────────────

    @app.post("/reminders/scan", response_model=ReminderScanResult)
    async def scan_reminders(
        now: datetime | None = None, ctx: AppContext = Depends(get_context)
    ) -> ReminderScanResult:
        """Send reminders for events starting soon.

        Pass *now* to control the clock; defaults to the current UTC time.
        """
        return await ctx.reminders.scan(now or datetime.now(timezone.utc))

    # ── Email verification ────────────────────────────────────────────

    @app.post("/otp/send", response_model=OtpSendResult)
    async def send_otp(
        payload: OtpSendRequest, ctx: AppContext = Depends(get_context)
    ) -> OtpSendResult:
        return await ctx.otp.send_otp(payload.email, payload.user_name)

    @app.post("/otp/verify", response_model=VerificationResult)
    async def verify_otp(
        payload: OtpVerifyRequest, ctx: AppContext = Depends(get_context)
    ) -> VerificationResult:
        result = ctx.otp.verify(payload.email, payload.otp)
        if result.valid and payload.user_id:
            await ctx.calendar.set_user_email_verified(payload.user_id)
        return result

    @app.get("/users/{user_id}/verification", response_model=UserVerification)
    async def get_verification(
        user_id: str, ctx: AppContext = Depends(get_context)
    ) -> UserVerification:
        status = await ctx.calendar.get_user_verification_status(user_id)
        if status is None:
            raise NotFoundError("No verification record", entity_id=user_id)
        return status

    # ── Live feed ─────────────────────────────────────────────────────

    @app.websocket("/feed")
    async def live_feed(websocket: WebSocket) -> None:
        """Push the caller's filtered events and groups on every change."""
        await websocket.accept()
        viewer = Viewer.of(
            user_id=websocket.query_params.get("user_id"),
            email=websocket.query_params.get("email"),
        )
        outbox: asyncio.Queue = asyncio.Queue()

        def dump(items: list) -> list[dict]:
            return [item.model_dump(by_alias=True, mode="json") for item in items]

        sub = ctx.sync.subscribe(
            on_events=lambda events: outbox.put_nowait({"type": "events", "items": dump(events)}),
            on_groups=lambda groups: outbox.put_nowait({"type": "groups", "items": dump(groups)}),
            viewer=viewer,
            on_error=lambda err: outbox.put_nowait({"type": "error", "message": err.message}),
        )

        async def pump() -> None:
            try:
                while True:
                    message = await outbox.get()
                    await websocket.send_json(message)
                    if message["type"] == "error":
                        await websocket.close(code=1011)
                        return
            except WebSocketDisconnect:
                return

        sender = asyncio.create_task(pump())
        try:
            # Returns once the client disconnects.
            async for _ in websocket.iter_text():
                pass
        finally:
            # Nothing here may await: the endpoint can already be cancelled.
            sub.unsubscribe()
            sender.cancel()
            logger.debug("Live feed for %s closed", viewer.token or "anonymous")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("teamcal.main:app", host="127.0.0.1", port=8000)
