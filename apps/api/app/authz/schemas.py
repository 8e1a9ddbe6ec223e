from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class TeamCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)


class TeamRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    created_at: datetime


class TeamMemberAdd(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)


class TeamMemberRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    team_id: UUID
    created_at: datetime
