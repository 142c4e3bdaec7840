"""Identity tokens used for ownership and membership matching.

A stored ``createdBy``/``members``/``assignedTo`` entry is a bare string that
may hold either a user id or an email address. Matching goes through
:meth:`Principal.matches` so that emails compare case-insensitively while ids
stay exact.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class UserId:
    value: str

    def matches(self, token: str | None) -> bool:
        return bool(token) and token == self.value


@dataclass(frozen=True)
class Email:
    value: str

    def matches(self, token: str | None) -> bool:
        return bool(token) and token.strip().lower() == self.value.strip().lower()


Principal = Union[UserId, Email]


def same_principal(a: Principal, b: Principal) -> bool:
    """Equivalence over two principals. Different tags never compare equal."""
    if type(a) is not type(b):
        return False
    return a.matches(b.value)


@dataclass(frozen=True)
class Viewer:
    """The signed-in identity: every principal the current user answers to.

    An empty viewer is the anonymous/admin context and sees everything.
    """

    principals: tuple[Principal, ...] = ()

    @classmethod
    def of(cls, user_id: str | None = None, email: str | None = None) -> Viewer:
        principals: list[Principal] = []
        if user_id:
            principals.append(UserId(user_id))
        if email:
            principals.append(Email(email))
        return cls(tuple(principals))

    @property
    def is_anonymous(self) -> bool:
        return not self.principals

    @property
    def user_id(self) -> str | None:
        return next((p.value for p in self.principals if isinstance(p, UserId)), None)

    @property
    def email(self) -> str | None:
        return next((p.value for p in self.principals if isinstance(p, Email)), None)

    @property
    def token(self) -> str | None:
        """Value written into ``createdBy``: the user id, else the email."""
        return self.user_id or self.email

    def matches(self, token: str | None) -> bool:
        return any(p.matches(token) for p in self.principals)

    def matches_any(self, tokens: list[str] | None) -> bool:
        return any(self.matches(t) for t in tokens or [])
