from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.errors import ConflictError, CRMError, InvalidArgumentError, NotFoundError, UnavailableError
from app.crm.schemas import (
    ApplicationCreate,
    ApplicationRead,
    LeadCreate,
    LeadRead,
    TaskCreateRequest,
    TaskCreateResponse,
    TaskRead,
)
from app.crm.service import application_service, lead_service, task_lifecycle_service
from app.platform.security.context import Principal, parse_role
from app.platform.security.errors import AuthorizationError, TenantIsolationError

leads_router = APIRouter(prefix="/api", tags=["crm.leads"])
applications_router = APIRouter(prefix="/api", tags=["crm.applications"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["crm.tasks"])


@dataclass
class ErrorEnvelope:
    error: str
    code: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        error=message,
        code=code,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


_STATUS_BY_ERROR: dict[type[CRMError], int] = {
    InvalidArgumentError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    UnavailableError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def crm_error_response(request: Request, exc: CRMError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR.items() if isinstance(exc, error_type)),
        status.HTTP_400_BAD_REQUEST,
    )
    return error_response(request, status_code=status_code, code=exc.code, message=exc.message, details=exc.details)


def forbidden_response(request: Request, exc: AuthorizationError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_403_FORBIDDEN,
        code="forbidden",
        message="Permission denied",
        details=str(exc),
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> Principal:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return Principal(
        user_id=auth_user.sub,
        tenant_id=auth_user.tenant_id,
        role=parse_role(auth_user.role),
        correlation_id=correlation_id,
    )


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    stage: str | None = Query(default=None),
    owner_id: str | None = Query(default=None),
    team_id: uuid.UUID | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_user),
) -> list[LeadRead]:
    return lead_service.list_leads(
        db,
        principal,
        filters={"stage": stage, "owner_id": owner_id, "team_id": team_id, "q": q},
        cursor=cursor,
        limit=limit,
    )


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, principal, dto)
    except AuthorizationError as exc:
        return forbidden_response(request, exc)
    except CRMError as exc:
        return crm_error_response(request, exc)


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, principal, lead_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@applications_router.post("/applications", response_model=ApplicationRead, status_code=status.HTTP_201_CREATED)
def create_application(
    request: Request,
    dto: ApplicationCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_user),
) -> ApplicationRead | JSONResponse:
    try:
        return application_service.create_application(db, principal, dto)
    except AuthorizationError as exc:
        return forbidden_response(request, exc)
    except CRMError as exc:
        return crm_error_response(request, exc)


@applications_router.get("/applications/{application_id}", response_model=ApplicationRead)
def get_application(
    request: Request,
    application_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_user),
) -> ApplicationRead | JSONResponse:
    try:
        return application_service.get_application(db, principal, application_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@tasks_router.post("", response_model=TaskCreateResponse)
def create_task(
    request: Request,
    dto: TaskCreateRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_user),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> TaskCreateResponse | JSONResponse:
    try:
        task = task_lifecycle_service.create_task(
            db,
            principal,
            dto.application_id,
            dto.task_type,
            dto.due_at,
            idempotency_key=idempotency_key,
        )
    except (NotFoundError, AuthorizationError):
        # Another tenant's application must look exactly like a missing one.
        return error_response(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            code="application_not_found",
            message="Application not found",
        )
    except CRMError as exc:
        return crm_error_response(request, exc)
    return TaskCreateResponse(task_id=task.id)


@tasks_router.api_route("", methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
def tasks_method_not_allowed(request: Request) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        code="method_not_allowed",
        message="Method not allowed",
    )


@tasks_router.get("/due-today", response_model=list[TaskRead])
def list_due_today(
    request: Request,
    as_of: datetime | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        return task_lifecycle_service.list_due_today(db, principal, as_of, cursor=cursor, limit=limit)
    except CRMError as exc:
        return crm_error_response(request, exc)


@tasks_router.post("/{task_id}/complete", response_model=TaskRead)
def complete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_lifecycle_service.complete_task(db, principal, task_id)
    except (NotFoundError, TenantIsolationError):
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="task_not_found",
            message="task not found",
        )
    except AuthorizationError as exc:
        return forbidden_response(request, exc)
    except CRMError as exc:
        return crm_error_response(request, exc)
