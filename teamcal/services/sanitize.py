"""Input sanitization and email validation helpers."""

from __future__ import annotations

import re

import bleach

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 5000
MESSAGE_MAX_LENGTH = 1000
GROUP_NAME_MAX_LENGTH = 100

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def sanitize_text(text: str | None, max_length: int = MESSAGE_MAX_LENGTH) -> str:
    """Strip HTML tags and stray angle brackets, trim, and cap the length."""
    if not text or not isinstance(text, str):
        return ""
    # bleach escapes what it does not strip; undo that so stored text stays plain.
    cleaned = bleach.clean(text, tags=set(), attributes={}, strip=True)
    cleaned = cleaned.replace("&lt;", "").replace("&gt;", "").replace("&amp;", "&")
    cleaned = cleaned.replace("<", "").replace(">", "").strip()
    return cleaned[:max_length]


def sanitize_title(title: str | None) -> str:
    return sanitize_text(title, TITLE_MAX_LENGTH)


def sanitize_description(description: str | None) -> str:
    return sanitize_text(description, DESCRIPTION_MAX_LENGTH)


def sanitize_message(message: str | None) -> str:
    return sanitize_text(message, MESSAGE_MAX_LENGTH)


def sanitize_group_name(name: str | None) -> str:
    return sanitize_text(name, GROUP_NAME_MAX_LENGTH)


def normalize_email(email: str | None) -> str:
    if not email or not isinstance(email, str):
        return ""
    return email.strip().lower()


def is_valid_email(email: str | None) -> bool:
    if not email or not isinstance(email, str):
        return False
    return bool(_EMAIL_RE.match(email.strip()))


def validate_emails(emails: str | None) -> tuple[list[str], list[str]]:
    """Split a comma-separated list into (valid, invalid) addresses."""
    if not emails:
        return [], []
    valid: list[str] = []
    invalid: list[str] = []
    for raw in emails.split(","):
        email = raw.strip()
        if not email:
            continue
        (valid if is_valid_email(email) else invalid).append(email)
    return valid, invalid


def dedupe_emails(*groups: list[str]) -> list[str]:
    """Concatenate address lists, dropping case-insensitive duplicates.

    The first spelling of each address wins and order is preserved.
    """
    seen: set[str] = set()
    result: list[str] = []
    for group in groups:
        for entry in group:
            if not entry:
                continue
            key = entry.strip().lower()
            if key in seen:
                continue
            seen.add(key)
            result.append(entry.strip())
    return result
