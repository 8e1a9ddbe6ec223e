from __future__ import annotations

import threading
import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.authz.models import Team, TeamMembership
from app.core.database import Base
from app.platform.security.memberships import (
    CachedMembershipResolver,
    DbMembershipResolver,
    InMemoryMembershipResolver,
    get_membership_resolver,
    invalidate_memberships,
    resolver_for_session,
    set_membership_resolver,
    SessionMembershipResolver,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class CountingResolver(InMemoryMembershipResolver):
    def __init__(self, memberships: dict[str, set[uuid.UUID]]) -> None:
        super().__init__(memberships)
        self.calls: list[str] = []

    def memberships_of(self, user_id: str) -> frozenset[uuid.UUID]:
        self.calls.append(user_id)
        return super().memberships_of(user_id)


class BlockingResolver:
    """Reads memberships, then holds the answer until released."""

    def __init__(self, memberships: dict[str, set[uuid.UUID]]) -> None:
        self.memberships = memberships
        self.started = threading.Event()
        self.release = threading.Event()

    def memberships_of(self, user_id: str) -> frozenset[uuid.UUID]:
        teams = frozenset(self.memberships.get(user_id, set()))
        self.started.set()
        self.release.wait(timeout=5)
        return teams


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_resolver() -> Generator[None, None, None]:
    previous = get_membership_resolver()
    set_membership_resolver(None)
    yield
    set_membership_resolver(previous)


def test_unknown_user_has_no_memberships() -> None:
    assert InMemoryMembershipResolver().memberships_of("nobody") == frozenset()


def test_db_resolver_reads_membership_rows(session_factory: sessionmaker[Session]) -> None:
    with session_factory() as session:
        team_a = Team(tenant_id="t1", name="A")
        team_b = Team(tenant_id="t1", name="B")
        session.add_all([team_a, team_b])
        session.flush()
        session.add_all(
            [
                TeamMembership(user_id="alice", team_id=team_a.id),
                TeamMembership(user_id="alice", team_id=team_b.id),
                TeamMembership(user_id="bob", team_id=team_b.id),
            ]
        )
        session.commit()
        expected = {team_a.id, team_b.id}

    resolver = DbMembershipResolver(session_factory)
    assert resolver.memberships_of("alice") == frozenset(expected)
    assert len(resolver.memberships_of("bob")) == 1
    assert resolver.memberships_of("carol") == frozenset()


def test_cached_resolver_serves_repeat_lookups_from_cache() -> None:
    team = uuid.uuid4()
    inner = CountingResolver({"alice": {team}})
    cached = CachedMembershipResolver(inner, ttl_seconds=30, clock=FakeClock())

    assert cached.memberships_of("alice") == frozenset({team})
    assert cached.memberships_of("alice") == frozenset({team})
    assert inner.calls == ["alice"]


def test_cached_resolver_expires_after_ttl() -> None:
    clock = FakeClock()
    inner = CountingResolver({"alice": {uuid.uuid4()}})
    cached = CachedMembershipResolver(inner, ttl_seconds=30, clock=clock)

    cached.memberships_of("alice")
    clock.now += 29
    cached.memberships_of("alice")
    assert len(inner.calls) == 1

    clock.now += 2
    cached.memberships_of("alice")
    assert len(inner.calls) == 2


def test_invalidate_drops_single_user_or_everything() -> None:
    inner = CountingResolver({"alice": {uuid.uuid4()}, "bob": {uuid.uuid4()}})
    cached = CachedMembershipResolver(inner, ttl_seconds=300, clock=FakeClock())

    cached.memberships_of("alice")
    cached.memberships_of("bob")
    cached.invalidate("alice")
    cached.memberships_of("alice")
    cached.memberships_of("bob")
    assert inner.calls == ["alice", "bob", "alice"]

    cached.invalidate()
    cached.memberships_of("bob")
    assert inner.calls[-1] == "bob"
    assert len(inner.calls) == 4


def test_invalidate_memberships_targets_global_cached_resolver() -> None:
    inner = CountingResolver({"alice": {uuid.uuid4()}})
    cached = CachedMembershipResolver(inner, ttl_seconds=300, clock=FakeClock())
    set_membership_resolver(cached)

    cached.memberships_of("alice")
    invalidate_memberships("alice")
    cached.memberships_of("alice")
    assert inner.calls == ["alice", "alice"]


def test_resolver_for_session_prefers_global_override(session_factory: sessionmaker[Session]) -> None:
    with session_factory() as session:
        assert isinstance(resolver_for_session(session), SessionMembershipResolver)

        override = InMemoryMembershipResolver()
        set_membership_resolver(override)
        assert resolver_for_session(session) is override


@pytest.mark.parametrize("scope", ["user", "everyone"])
def test_invalidate_during_inflight_lookup_does_not_cache_stale_teams(scope: str) -> None:
    team = uuid.UUID("00000000-0000-0000-0000-000000000001")
    inner = BlockingResolver({"u1": {team}})
    cached = CachedMembershipResolver(inner, ttl_seconds=300, clock=FakeClock())
    results: list[frozenset[uuid.UUID]] = []

    lookup = threading.Thread(target=lambda: results.append(cached.memberships_of("u1")))
    lookup.start()
    assert inner.started.wait(timeout=5)

    inner.memberships["u1"] = set()
    cached.invalidate("u1" if scope == "user" else None)
    inner.release.set()
    lookup.join(timeout=5)

    assert results == [frozenset({team})]
    assert cached.memberships_of("u1") == frozenset()
