"""One-time-code email verification.

Codes live in a local key-value store keyed by lower-cased email. A record
that has expired or used up its attempts is deleted the next time it is read.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from typing import Callable

from teamcal.config import Settings
from teamcal.domain.errors import TeamCalError
from teamcal.domain.models import OtpRecord, OtpSendResult, VerificationResult
from teamcal.services.email import EmailJsTransport
from teamcal.services.sanitize import is_valid_email, normalize_email

logger = logging.getLogger(__name__)


class LocalKeyValueStore:
    """String key -> JSON string, like browser local storage."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._items


def generate_otp() -> str:
    """Random 6-digit code."""
    return str(100000 + secrets.randbelow(900000))


def _key(email: str) -> str:
    return f"otp_{normalize_email(email)}"


class OtpService:
    def __init__(
        self,
        transport: EmailJsTransport,
        settings: Settings,
        storage: LocalKeyValueStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.transport = transport
        self.settings = settings
        self.storage = storage or LocalKeyValueStore()
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def store_otp(self, email: str, otp: str) -> OtpRecord:
        record = OtpRecord(
            email=normalize_email(email),
            otp=otp,
            expiry_time=self._now_ms() + self.settings.OTP_EXPIRY_MINUTES * 60 * 1000,
            attempts=0,
            max_attempts=self.settings.OTP_MAX_ATTEMPTS,
        )
        self._save(record)
        return record

    def _save(self, record: OtpRecord) -> None:
        self.storage.set_item(_key(record.email), json.dumps(record.to_record()))

    def get_stored_otp(self, email: str) -> OtpRecord | None:
        key = _key(email)
        raw = self.storage.get_item(key)
        if raw is None:
            return None
        try:
            record = OtpRecord.model_validate(json.loads(raw))
        except ValueError:
            logger.error("Discarding unreadable OTP record for %s", key)
            self.storage.remove_item(key)
            return None

        if self._now_ms() > record.expiry_time or record.attempts >= record.max_attempts:
            self.storage.remove_item(key)
            return None
        return record

    def verify(self, email: str, otp: str) -> VerificationResult:
        record = self.get_stored_otp(email)
        if record is None:
            return VerificationResult(
                valid=False,
                message="OTP has expired or is invalid. Please request a new one.",
            )

        record.attempts += 1
        self._save(record)

        if record.attempts >= record.max_attempts:
            self.clear(email)
            return VerificationResult(
                valid=False,
                message="Maximum verification attempts exceeded. Please request a new OTP.",
            )

        if record.otp != otp.strip():
            remaining = record.max_attempts - record.attempts
            return VerificationResult(
                valid=False,
                message=f"Invalid OTP. {remaining} attempt(s) remaining.",
            )

        self.clear(email)
        return VerificationResult(valid=True, message="OTP verified successfully!")

    async def send_otp(
        self, email: str, user_name: str | None, otp: str | None = None
    ) -> OtpSendResult:
        """Email a code and remember it once the email has been accepted."""
        if not email or not email.strip():
            return OtpSendResult(success=False, message="Email address is required")
        if not is_valid_email(email):
            return OtpSendResult(success=False, message="Please enter a valid email address")

        address = normalize_email(email)
        code = otp or generate_otp()
        params = {
            "user_name": user_name or "User",
            "otp_code": code,
            "expiry_minutes": str(self.settings.OTP_EXPIRY_MINUTES),
            "to_email": address,
            "user_email": address,
            "email": address,
            "reply_to": address,
        }
        try:
            await self.transport.send(self.settings.EMAILJS_OTP_TEMPLATE, params)
        except TeamCalError as exc:
            logger.error("Error sending OTP email to %s***: %s", address[:3], exc.message)
            return OtpSendResult(success=False, message=exc.message or "Failed to send OTP.")

        self.store_otp(address, code)
        logger.info("OTP sent to %s***", address[:3])
        return OtpSendResult(
            success=True, message="OTP sent successfully! Please check your email."
        )

    async def resend(self, email: str, user_name: str | None) -> OtpSendResult:
        return await self.send_otp(email, user_name)

    def clear(self, email: str) -> None:
        self.storage.remove_item(_key(email))
