from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.authz.models import Team, TeamMembership
from app.core.database import Base
from app.crm.models import CRMLead, CRMTask
from app.crm.repositories import LeadRepository
from app.platform.security.context import Principal, Role
from app.platform.security.memberships import SessionMembershipResolver
from app.platform.security.policies import Decision, ResourceAction, decide
from app.platform.security.rls import apply_lead_read_filter, apply_tenant_filter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def seeded(db_session: Session) -> dict[str, uuid.UUID]:
    admissions = Team(tenant_id="t1", name="Admissions")
    outreach = Team(tenant_id="t1", name="Outreach")
    foreign = Team(tenant_id="t2", name="Admissions")
    db_session.add_all([admissions, outreach, foreign])
    db_session.flush()

    db_session.add_all(
        [
            TeamMembership(user_id="alice", team_id=admissions.id),
            TeamMembership(user_id="bob", team_id=outreach.id),
            TeamMembership(user_id="alice", team_id=foreign.id),
        ]
    )

    rows = [
        ("t1", "alice", None),
        ("t1", "bob", None),
        ("t1", None, admissions.id),
        ("t1", "carol", admissions.id),
        ("t1", "carol", outreach.id),
        ("t1", None, None),
        ("t2", "alice", None),
        ("t2", None, foreign.id),
    ]
    for index, (tenant_id, owner_id, team_id) in enumerate(rows):
        db_session.add(
            CRMLead(tenant_id=tenant_id, owner_id=owner_id, team_id=team_id, full_name=f"Lead {index}")
        )
    db_session.commit()
    return {"admissions": admissions.id, "outreach": outreach.id, "foreign": foreign.id}


PRINCIPALS = [
    Principal(user_id="alice", tenant_id="t1", role=Role.COUNSELOR),
    Principal(user_id="bob", tenant_id="t1", role=Role.COUNSELOR),
    Principal(user_id="carol", tenant_id="t1", role=Role.COUNSELOR),
    Principal(user_id="dave", tenant_id="t1", role=Role.COUNSELOR),
    Principal(user_id="root", tenant_id="t1", role=Role.ADMIN),
    Principal(user_id="alice", tenant_id="t2", role=Role.COUNSELOR),
    Principal(user_id="root", tenant_id="t2", role=Role.ADMIN),
    Principal(user_id="viewer", tenant_id="t1"),
    Principal.anonymous(),
]


@pytest.mark.parametrize("principal", PRINCIPALS, ids=lambda p: f"{p.user_id}@{p.tenant_id}")
def test_lead_read_filter_matches_evaluator_row_by_row(
    db_session: Session,
    seeded: dict[str, uuid.UUID],
    principal: Principal,
) -> None:
    resolver = SessionMembershipResolver(db_session)
    repository = LeadRepository(db_session, resolver)

    filtered = set(db_session.scalars(apply_lead_read_filter(select(CRMLead), principal, resolver)).all())
    every_lead = db_session.scalars(select(CRMLead)).all()
    permitted = {
        lead
        for lead in every_lead
        if decide(principal, repository.to_resource(lead), ResourceAction.READ, resolver) == Decision.PERMIT
    }

    assert {lead.id for lead in filtered} == {lead.id for lead in permitted}


def test_lead_read_filter_visibility_examples(db_session: Session, seeded: dict[str, uuid.UUID]) -> None:
    resolver = SessionMembershipResolver(db_session)

    alice = Principal(user_id="alice", tenant_id="t1", role=Role.COUNSELOR)
    visible = db_session.scalars(apply_lead_read_filter(select(CRMLead), alice, resolver)).all()
    assert all(lead.tenant_id == "t1" for lead in visible)
    assert {(lead.owner_id, lead.team_id) for lead in visible} == {
        ("alice", None),
        (None, seeded["admissions"]),
        ("carol", seeded["admissions"]),
    }

    admin = Principal(user_id="root", tenant_id="t1", role=Role.ADMIN)
    assert len(db_session.scalars(apply_lead_read_filter(select(CRMLead), admin, resolver)).all()) == 6


def test_tenant_filter_returns_nothing_without_tenant(db_session: Session, seeded: dict[str, uuid.UUID]) -> None:
    stmt = apply_tenant_filter(select(CRMLead), Principal.anonymous())
    assert db_session.scalars(stmt).all() == []


def test_tenant_filter_scopes_tasks_to_principal_tenant(db_session: Session) -> None:
    stmt = apply_tenant_filter(select(CRMTask), Principal(user_id="u", tenant_id="t9", role=Role.COUNSELOR))
    compiled = str(stmt.compile(compile_kwargs={"literal_binds": True}))
    assert "crm_task.tenant_id = 't9'" in compiled
