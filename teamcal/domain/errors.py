"""Error taxonomy shared by the store, services and HTTP layer."""

from __future__ import annotations


class TeamCalError(Exception):
    """Base class for every error raised by teamcal."""

    code = "TEAMCAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TeamCalError):
    """A required field is missing or malformed. Raised before any write."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(TeamCalError):
    code = "NOT_FOUND"

    def __init__(self, message: str, entity_id: str | None = None) -> None:
        super().__init__(message)
        self.entity_id = entity_id


class TransportError(TeamCalError):
    """The store or the email endpoint failed. Safe to retry."""

    code = "TRANSPORT_ERROR"
    retryable = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(TeamCalError):
    """Email transport is not configured; notifications are skipped."""

    code = "CONFIGURATION_ERROR"
