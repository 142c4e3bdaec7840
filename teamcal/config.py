"""
teamcal centralized configuration.

Loads settings from the environment (and a project-root ``.env`` if present).
Nothing here is mandatory: without EmailJS credentials the notification
side-channel is disabled and mutations still succeed.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # EmailJS
    EMAILJS_API_URL: str = "https://api.emailjs.com/api/v1.0/email/send"
    EMAILJS_SERVICE_ID: str = ""
    EMAILJS_USER_ID: str = ""
    EMAILJS_EVENT_CREATED_TEMPLATE: str = "template_event_created"
    EMAILJS_EVENT_REMINDER_TEMPLATE: str = "template_event_reminder"
    EMAILJS_OTP_TEMPLATE: str = "template_otp"
    EMAIL_TIMEOUT_SECONDS: float = 10.0

    # OTP verification
    OTP_EXPIRY_MINUTES: int = 10
    OTP_MAX_ATTEMPTS: int = 5

    # Reminders: fire when an event starts between (lead - window) and lead
    # minutes from the scan time.
    REMINDER_LEAD_MINUTES: int = 5
    REMINDER_WINDOW_MINUTES: int = 1

    LOG_LEVEL: str = "INFO"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def upper_level(cls, v: str) -> str:
        return str(v).upper()

    @property
    def email_configured(self) -> bool:
        return bool(self.EMAILJS_SERVICE_ID.strip() and self.EMAILJS_USER_ID.strip())


def load_settings() -> Settings:
    """Build Settings from the current environment, keeping defaults for unset keys."""
    values = {
        name: os.environ[name]
        for name in Settings.model_fields
        if os.environ.get(name, "") != ""
    }
    return Settings(**values)


# Singleton, imported by the entry point as:
#   from teamcal.config import settings
settings = load_settings()
