from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class LeadCreate(BaseModel):
    full_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    source: str | None = None
    stage: str = "new"
    owner_id: str | None = None
    team_id: UUID | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    owner_id: str | None
    team_id: UUID | None
    full_name: str
    email: str | None
    phone: str | None
    stage: str
    source: str | None
    created_at: datetime
    updated_at: datetime


class ApplicationCreate(BaseModel):
    lead_id: UUID | None = None
    program: str | None = None
    status: str = "submitted"


class ApplicationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    lead_id: UUID | None
    program: str | None
    status: str
    created_at: datetime


class TaskCreateRequest(BaseModel):
    """Raw task creation body; semantic validation happens in the lifecycle service."""

    application_id: str | None = None
    task_type: str | None = None
    due_at: str | None = None


class TaskCreateResponse(BaseModel):
    success: bool = True
    task_id: UUID


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    application_id: UUID
    type: str
    status: str
    due_at: datetime
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int

