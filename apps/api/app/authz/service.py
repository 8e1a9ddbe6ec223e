from __future__ import annotations

import logging
import uuid

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.authz.models import Team, TeamMembership
from app.authz.schemas import TeamCreate, TeamMemberRead, TeamRead
from app.platform.security.context import Principal
from app.platform.security.memberships import invalidate_memberships


logger = logging.getLogger("app.authz.admin")


class TeamAdminService:
    """Team and membership administration, always scoped to the caller's tenant."""

    def create_team(self, session: Session, principal: Principal, dto: TeamCreate) -> TeamRead:
        team = Team(tenant_id=principal.tenant_id, name=dto.name.strip())
        session.add(team)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="team already exists")
        session.refresh(team)
        audit.record(
            actor_user_id=principal.user_id,
            tenant_id=principal.tenant_id,
            entity_type="authz.team",
            entity_id=str(team.id),
            action="create",
            before=None,
            after={"name": team.name},
            correlation_id=principal.correlation_id,
        )
        return TeamRead.model_validate(team)

    def list_teams(self, session: Session, principal: Principal) -> list[TeamRead]:
        rows = session.scalars(
            select(Team).where(Team.tenant_id == principal.tenant_id).order_by(Team.name.asc())
        ).all()
        return [TeamRead.model_validate(row) for row in rows]

    def add_member(self, session: Session, principal: Principal, team_id: uuid.UUID, user_id: str) -> TeamMemberRead:
        team = self._get_team(session, principal, team_id)
        user_id = user_id.strip()
        existing = session.scalar(
            select(TeamMembership).where(and_(TeamMembership.team_id == team.id, TeamMembership.user_id == user_id))
        )
        if existing is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="user already in team")

        membership = TeamMembership(team_id=team.id, user_id=user_id)
        session.add(membership)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="user already in team")
        session.refresh(membership)
        invalidate_memberships(membership.user_id)
        audit.record(
            actor_user_id=principal.user_id,
            tenant_id=principal.tenant_id,
            entity_type="authz.team_membership",
            entity_id=f"{team.id}:{membership.user_id}",
            action="add",
            before=None,
            after={"team_id": str(team.id), "user_id": membership.user_id},
            correlation_id=principal.correlation_id,
        )
        logger.info("team.member_added", extra={"tenant_id": principal.tenant_id, "user_id": membership.user_id})
        return TeamMemberRead.model_validate(membership)

    def remove_member(self, session: Session, principal: Principal, team_id: uuid.UUID, user_id: str) -> None:
        team = self._get_team(session, principal, team_id)
        membership = session.scalar(
            select(TeamMembership).where(and_(TeamMembership.team_id == team.id, TeamMembership.user_id == user_id))
        )
        if membership is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="membership not found")

        session.delete(membership)
        session.commit()
        invalidate_memberships(user_id)
        audit.record(
            actor_user_id=principal.user_id,
            tenant_id=principal.tenant_id,
            entity_type="authz.team_membership",
            entity_id=f"{team.id}:{user_id}",
            action="remove",
            before={"team_id": str(team.id), "user_id": user_id},
            after=None,
            correlation_id=principal.correlation_id,
        )
        logger.info("team.member_removed", extra={"tenant_id": principal.tenant_id, "user_id": user_id})

    def list_members(self, session: Session, principal: Principal, team_id: uuid.UUID) -> list[TeamMemberRead]:
        team = self._get_team(session, principal, team_id)
        rows = session.scalars(
            select(TeamMembership).where(TeamMembership.team_id == team.id).order_by(TeamMembership.user_id.asc())
        ).all()
        return [TeamMemberRead.model_validate(row) for row in rows]

    def _get_team(self, session: Session, principal: Principal, team_id: uuid.UUID) -> Team:
        team = session.scalar(select(Team).where(and_(Team.id == team_id, Team.tenant_id == principal.tenant_id)))
        if team is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="team not found")
        return team


team_admin_service = TeamAdminService()
