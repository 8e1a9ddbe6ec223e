from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from app.authz.models import TeamMembership
from app.core.database import SessionLocal
from app.metrics import observe_membership_cache_hit, observe_membership_cache_miss, observe_membership_db_query


class MembershipResolver(Protocol):
    """Answers which teams a user belongs to. Never raises for unknown users."""

    def memberships_of(self, user_id: str) -> frozenset[uuid.UUID]:
        ...


class InMemoryMembershipResolver:
    def __init__(self, memberships: dict[str, Iterable[uuid.UUID]] | None = None) -> None:
        self._memberships = {user: frozenset(teams) for user, teams in (memberships or {}).items()}

    def memberships_of(self, user_id: str) -> frozenset[uuid.UUID]:
        return self._memberships.get(user_id, frozenset())


class DbMembershipResolver:
    """Resolves memberships from ``authz_team_membership`` with a short-lived session."""

    def __init__(self, session_factory: sessionmaker[Session] | Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def memberships_of(self, user_id: str) -> frozenset[uuid.UUID]:
        with self._session_factory() as session:
            rows = session.scalars(select(TeamMembership.team_id).where(TeamMembership.user_id == user_id)).all()
        observe_membership_db_query(1)
        return frozenset(rows)


class SessionMembershipResolver:
    """Resolves memberships through the caller's session so reads see uncommitted changes."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def memberships_of(self, user_id: str) -> frozenset[uuid.UUID]:
        rows = self._session.scalars(select(TeamMembership.team_id).where(TeamMembership.user_id == user_id)).all()
        observe_membership_db_query(1)
        return frozenset(rows)


@dataclass(slots=True)
class _CacheEntry:
    teams: frozenset[uuid.UUID]
    expires_at: float


class CachedMembershipResolver:
    """TTL cache in front of another resolver; membership writes must call ``invalidate``.

    A lookup that was in flight when ``invalidate`` ran is returned to its
    caller but never stored, so a removed membership cannot be re-cached.
    """

    def __init__(
        self,
        inner: MembershipResolver,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inner = inner
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self._lock = Lock()

    def memberships_of(self, user_id: str) -> frozenset[uuid.UUID]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is not None and entry.expires_at > now:
                observe_membership_cache_hit()
                return entry.teams
            generation = (self._epoch, self._generations.get(user_id, 0))

        observe_membership_cache_miss()
        teams = self._inner.memberships_of(user_id)
        with self._lock:
            if generation == (self._epoch, self._generations.get(user_id, 0)):
                self._entries[user_id] = _CacheEntry(teams=teams, expires_at=now + self._ttl_seconds)
        return teams

    def invalidate(self, user_id: str | None = None) -> None:
        with self._lock:
            if user_id is None:
                self._entries.clear()
                self._epoch += 1
            else:
                self._entries.pop(user_id, None)
                self._generations[user_id] = self._generations.get(user_id, 0) + 1


_MEMBERSHIP_RESOLVER: MembershipResolver | None = None
_RESOLVER_LOCK = Lock()


def get_membership_resolver() -> MembershipResolver | None:
    """Process-wide resolver override; ``None`` means resolve per session."""

    return _MEMBERSHIP_RESOLVER


def set_membership_resolver(resolver: MembershipResolver | None) -> None:
    global _MEMBERSHIP_RESOLVER
    with _RESOLVER_LOCK:
        _MEMBERSHIP_RESOLVER = resolver


def resolver_for_session(session: Session) -> MembershipResolver:
    return _MEMBERSHIP_RESOLVER or SessionMembershipResolver(session)


def invalidate_memberships(user_id: str) -> None:
    resolver = _MEMBERSHIP_RESOLVER
    if isinstance(resolver, CachedMembershipResolver):
        resolver.invalidate(user_id)
