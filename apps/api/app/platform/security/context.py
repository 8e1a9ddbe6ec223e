from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Role(StrEnum):
    ADMIN = "admin"
    COUNSELOR = "counselor"


ANONYMOUS_USER_ID = "anonymous"


def parse_role(value: object) -> Role | None:
    if not isinstance(value, str):
        return None
    try:
        return Role(value.strip().lower())
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated caller snapshot used by policy evaluation.

    Built once per request from verified credentials. Team memberships are
    deliberately absent; they are resolved when a decision needs them.
    """

    user_id: str
    tenant_id: str | None = None
    role: Role | None = None
    correlation_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id != ANONYMOUS_USER_ID and bool(self.tenant_id)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @classmethod
    def anonymous(cls, correlation_id: str | None = None) -> Principal:
        return cls(user_id=ANONYMOUS_USER_ID, correlation_id=correlation_id)
