from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.authz.schemas import TeamCreate, TeamMemberAdd, TeamMemberRead, TeamRead
from app.authz.service import team_admin_service
from app.core.database import get_db
from app.crm.api import get_current_user
from app.platform.security.context import Principal


admin_router = APIRouter(prefix="/api/admin", tags=["admin.authz"])


def _require_admin(principal: Principal = Depends(get_current_user)) -> Principal:
    if not principal.is_authenticated or not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing role: admin")
    return principal


@admin_router.post("/teams", response_model=TeamRead, status_code=status.HTTP_201_CREATED)
def create_team(
    dto: TeamCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(_require_admin),
) -> TeamRead:
    return team_admin_service.create_team(db, principal, dto)


@admin_router.get("/teams", response_model=list[TeamRead])
def list_teams(
    db: Session = Depends(get_db),
    principal: Principal = Depends(_require_admin),
) -> list[TeamRead]:
    return team_admin_service.list_teams(db, principal)


@admin_router.post("/teams/{team_id}/members", response_model=TeamMemberRead, status_code=status.HTTP_201_CREATED)
def add_team_member(
    team_id: uuid.UUID,
    dto: TeamMemberAdd,
    db: Session = Depends(get_db),
    principal: Principal = Depends(_require_admin),
) -> TeamMemberRead:
    return team_admin_service.add_member(db, principal, team_id, dto.user_id)


@admin_router.get("/teams/{team_id}/members", response_model=list[TeamMemberRead])
def list_team_members(
    team_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(_require_admin),
) -> list[TeamMemberRead]:
    return team_admin_service.list_members(db, principal, team_id)


@admin_router.delete("/teams/{team_id}/members/{user_id}", status_code=status.HTTP_200_OK)
def remove_team_member(
    team_id: uuid.UUID,
    user_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(_require_admin),
) -> None:
    team_admin_service.remove_member(db, principal, team_id, user_id)
