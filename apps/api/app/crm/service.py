from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Iterator
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

from opentelemetry import trace
from sqlalchemy import Select, and_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit, events
from app.authz.models import Team
from app.core.config import get_settings
from app.crm.errors import ConflictError, InvalidArgumentError, NotFoundError, UnavailableError
from app.crm.models import CRMApplication, CRMIdempotencyKey, CRMLead, CRMTask, TaskStatus, TaskType
from app.crm.repositories import ApplicationRepository, LeadRepository, TaskRepository
from app.crm.schemas import ApplicationCreate, ApplicationRead, LeadCreate, LeadRead, TaskRead
from app.metrics import observe_task_completion_noop, observe_task_transition, observe_task_validation_failure
from app.platform.security.context import Principal
from app.platform.security.policies import (
    APPLICATION_RESOURCE,
    TASK_RESOURCE,
    LeadResource,
    ResourceAction,
    TenantResource,
    ensure_permitted,
)


logger = logging.getLogger("app.crm.tasks")
tracer = trace.get_tracer("app.crm.tasks")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips, bare ISO strings) as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def reference_timezone(name: str | None = None) -> tzinfo:
    resolved = name or get_settings().reference_timezone
    if resolved.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(resolved)


def day_bounds(as_of: datetime, tz: tzinfo) -> tuple[datetime, datetime]:
    """Inclusive [start, end] of the calendar day containing ``as_of`` in ``tz``, in UTC."""

    local = as_of.replace(tzinfo=tz) if as_of.tzinfo is None else as_of.astimezone(tz)
    start = datetime.combine(local.date(), time.min, tzinfo=tz)
    next_start = datetime.combine(local.date() + timedelta(days=1), time.min, tzinfo=tz)
    end = next_start - timedelta(microseconds=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def parse_due_at(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return ensure_aware(value)
    text = value.strip()
    if not text:
        raise ValueError("due_at is empty")
    return ensure_aware(datetime.fromisoformat(text))


def due_today_cursor(task: TaskRead) -> str:
    return f"{task.due_at.isoformat()}|{task.id}"


def parse_due_today_cursor(cursor: str) -> tuple[datetime, uuid.UUID]:
    due_text, _, id_text = cursor.rpartition("|")
    try:
        return ensure_aware(datetime.fromisoformat(due_text)), uuid.UUID(id_text)
    except (ValueError, OverflowError):
        raise InvalidArgumentError("cursor is not a valid due-today cursor", code="invalid_cursor") from None


def _request_hash(payload: dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()


class LeadService:
    entity_type = "crm.lead"

    def create_lead(self, session: Session, principal: Principal, dto: LeadCreate) -> LeadRead:
        repository = LeadRepository(session)
        owner_id = dto.owner_id or principal.user_id
        repository.validate_write_security(
            principal,
            LeadResource(tenant_id=principal.tenant_id or "", owner_id=owner_id, team_id=dto.team_id),
        )
        if dto.team_id is not None:
            team = session.scalar(select(Team).where(and_(Team.id == dto.team_id, Team.tenant_id == principal.tenant_id)))
            if team is None:
                raise InvalidArgumentError("team not found", code="invalid_team")

        lead = CRMLead(
            tenant_id=principal.tenant_id,
            owner_id=owner_id,
            team_id=dto.team_id,
            full_name=dto.full_name.strip(),
            email=str(dto.email) if dto.email is not None else None,
            phone=dto.phone,
            stage=dto.stage,
            source=dto.source,
        )
        try:
            session.add(lead)
            session.flush()
            lead_read = LeadRead.model_validate(lead)
            audit.record(
                actor_user_id=principal.user_id,
                tenant_id=principal.tenant_id,
                entity_type=self.entity_type,
                entity_id=str(lead.id),
                action="create",
                before=None,
                after=lead_read.model_dump(mode="json"),
                correlation_id=principal.correlation_id,
            )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("lead.create_failed", extra={"tenant_id": principal.tenant_id, "error": str(exc)})
            raise UnavailableError("Failed to create lead") from exc

        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "crm.lead.created",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": principal.user_id,
                "tenant_id": principal.tenant_id,
                "version": 1,
                "payload": {"lead_id": str(lead.id), "owner_id": lead.owner_id},
            }
        )
        return lead_read

    def list_leads(
        self,
        session: Session,
        principal: Principal,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[LeadRead]:
        repository = LeadRepository(session)
        stmt: Select[tuple[CRMLead]] = repository.apply_scope_query(select(CRMLead), principal)

        if filters.get("stage"):
            stmt = stmt.where(CRMLead.stage == filters["stage"])
        if filters.get("owner_id"):
            stmt = stmt.where(CRMLead.owner_id == filters["owner_id"])
        if filters.get("team_id"):
            stmt = stmt.where(CRMLead.team_id == filters["team_id"])
        if filters.get("q"):
            q = str(filters["q"])
            stmt = stmt.where((CRMLead.full_name.ilike(f"%{q}%")) | (CRMLead.email.ilike(f"%{q}%")))

        offset = int(cursor) if cursor and cursor.isdigit() else 0
        leads = session.scalars(stmt.order_by(CRMLead.created_at.desc(), CRMLead.id.asc()).offset(offset).limit(limit)).all()
        return [LeadRead.model_validate(item) for item in leads]

    def get_lead(self, session: Session, principal: Principal, lead_id: uuid.UUID) -> LeadRead:
        repository = LeadRepository(session)
        lead = repository.get(lead_id)
        if lead is None or not repository.can_read(principal, lead):
            raise NotFoundError("lead not found", code="lead_not_found")
        return LeadRead.model_validate(lead)


class ApplicationService:
    entity_type = APPLICATION_RESOURCE

    def create_application(self, session: Session, principal: Principal, dto: ApplicationCreate) -> ApplicationRead:
        ensure_permitted(
            principal,
            TenantResource(tenant_id=principal.tenant_id or "", kind=APPLICATION_RESOURCE),
            ResourceAction.WRITE,
            LeadRepository(session).memberships,
        )
        if dto.lead_id is not None:
            lead_service.get_lead(session, principal, dto.lead_id)

        application = CRMApplication(
            tenant_id=principal.tenant_id,
            lead_id=dto.lead_id,
            program=dto.program,
            status=dto.status,
        )
        try:
            session.add(application)
            session.flush()
            application_read = ApplicationRead.model_validate(application)
            audit.record(
                actor_user_id=principal.user_id,
                tenant_id=principal.tenant_id,
                entity_type=self.entity_type,
                entity_id=str(application.id),
                action="create",
                before=None,
                after=application_read.model_dump(mode="json"),
                correlation_id=principal.correlation_id,
            )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise UnavailableError("Failed to create application") from exc
        return application_read

    def get_application(self, session: Session, principal: Principal, application_id: uuid.UUID) -> ApplicationRead:
        repository = ApplicationRepository(session)
        application = repository.get(application_id)
        if application is None or not repository.can_read(principal, application):
            raise NotFoundError("application not found", code="application_not_found")
        return ApplicationRead.model_validate(application)


ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.OPEN: frozenset({TaskStatus.COMPLETED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class TaskLifecycleService:
    entity_type = TASK_RESOURCE
    create_endpoint = "POST /api/tasks"
    valid_types = tuple(item.value for item in TaskType)

    def create_task(
        self,
        session: Session,
        principal: Principal,
        application_id: str | uuid.UUID | None,
        task_type: str | None,
        due_at: str | datetime | None,
        *,
        now: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> TaskRead:
        evaluated_at = ensure_aware(now or utcnow())
        with tracer.start_as_current_span("crm.task.create") as span:
            span.set_attribute("tenant_id", principal.tenant_id or "")
            if principal.correlation_id:
                span.set_attribute("correlation_id", principal.correlation_id)

            request_hash = _request_hash(
                {"application_id": application_id, "task_type": task_type, "due_at": due_at}
            )
            replay = self._load_idempotent(session, principal, idempotency_key, request_hash)
            if replay is not None:
                return replay

            if not application_id or not task_type or not due_at:
                observe_task_validation_failure("missing_fields")
                raise InvalidArgumentError("Missing required fields", code="missing_fields")

            if task_type not in self.valid_types:
                observe_task_validation_failure("invalid_task_type")
                raise InvalidArgumentError(
                    f"Invalid task_type. Must be one of: {', '.join(self.valid_types)}",
                    code="invalid_task_type",
                )

            try:
                parsed_due_at = parse_due_at(due_at)
            except (TypeError, ValueError, OverflowError):
                parsed_due_at = None
            if parsed_due_at is None or parsed_due_at <= evaluated_at:
                observe_task_validation_failure("invalid_due_at")
                raise InvalidArgumentError("due_at must be a valid date in the future", code="invalid_due_at")

            try:
                application_uuid = application_id if isinstance(application_id, uuid.UUID) else uuid.UUID(str(application_id))
            except ValueError:
                observe_task_validation_failure("invalid_application_id")
                raise InvalidArgumentError("application_id must be a valid UUID", code="invalid_application_id") from None

            tenant_id = ApplicationRepository(session).get_tenant_id(application_uuid)
            if tenant_id is None:
                observe_task_validation_failure("application_not_found")
                raise NotFoundError("Application not found", code="application_not_found")

            repository = TaskRepository(session)
            repository.validate_write_security(
                principal,
                TenantResource(tenant_id=tenant_id, kind=TASK_RESOURCE),
            )

            task = CRMTask(
                tenant_id=tenant_id,
                application_id=application_uuid,
                type=task_type,
                status=TaskStatus.OPEN.value,
                due_at=parsed_due_at,
                created_at=evaluated_at,
                updated_at=evaluated_at,
            )
            try:
                repository.insert(task)
                task_read = self._to_read(task)
                self._store_idempotent(session, principal, idempotency_key, request_hash, task_read)
                audit.record(
                    actor_user_id=principal.user_id,
                    tenant_id=tenant_id,
                    entity_type=self.entity_type,
                    entity_id=str(task.id),
                    action="create",
                    before=None,
                    after=task_read.model_dump(mode="json"),
                    correlation_id=principal.correlation_id,
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                # A concurrent request with the same key won; answer with its stored response.
                replay = self._load_idempotent(session, principal, idempotency_key, request_hash)
                if replay is not None:
                    return replay
                logger.exception("task.create_failed", extra={"tenant_id": tenant_id, "error": str(exc)})
                raise UnavailableError("Failed to create task") from exc
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception("task.create_failed", extra={"tenant_id": tenant_id, "error": str(exc)})
                raise UnavailableError("Failed to create task") from exc

            span.set_attribute("task_id", str(task_read.id))
            observe_task_transition(TaskStatus.OPEN.value)
            logger.info(
                "task.created",
                extra={"task_id": str(task_read.id), "tenant_id": tenant_id, "status": task_read.status},
            )
            events.publish(
                {
                    "event_id": str(uuid.uuid4()),
                    "event_type": "crm.task.created",
                    "occurred_at": evaluated_at.isoformat(),
                    "actor_user_id": principal.user_id,
                    "tenant_id": tenant_id,
                    "version": 1,
                    "payload": {
                        "task_id": str(task_read.id),
                        "application_id": str(application_uuid),
                        "type": task_type,
                        "due_at": task_read.due_at.isoformat(),
                    },
                }
            )
            return task_read

    def complete_task(
        self,
        session: Session,
        principal: Principal,
        task_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> TaskRead:
        evaluated_at = ensure_aware(now or utcnow())
        with tracer.start_as_current_span("crm.task.complete") as span:
            span.set_attribute("task_id", str(task_id))
            if principal.correlation_id:
                span.set_attribute("correlation_id", principal.correlation_id)
            repository = TaskRepository(session)
            task = repository.get(task_id)
            if task is None:
                raise NotFoundError("task not found", code="task_not_found")

            repository.validate_write_security(
                principal,
                TenantResource(tenant_id=task.tenant_id, kind=TASK_RESOURCE, id=task.id),
            )

            current = TaskStatus(task.status)
            if current == TaskStatus.COMPLETED:
                return self._completion_noop(task)
            if not can_transition(current, TaskStatus.COMPLETED):
                raise ConflictError(f"task cannot move from {current.value} to completed", code="invalid_transition")

            before = self._to_read(task)
            try:
                updated = repository.update_status(
                    task.id,
                    from_status=current,
                    to_status=TaskStatus.COMPLETED,
                    at=evaluated_at,
                )
                if updated is None:
                    # Lost the compare-and-set; whoever won decides the outcome.
                    session.rollback()
                    latest = repository.get(task_id, refresh=True)
                    if latest is not None and latest.status == TaskStatus.COMPLETED.value:
                        return self._completion_noop(latest)
                    raise ConflictError("task status changed concurrently", code="concurrent_update")

                after = self._to_read(updated)
                audit.record(
                    actor_user_id=principal.user_id,
                    tenant_id=updated.tenant_id,
                    entity_type=self.entity_type,
                    entity_id=str(updated.id),
                    action="complete",
                    before=before.model_dump(mode="json"),
                    after=after.model_dump(mode="json"),
                    correlation_id=principal.correlation_id,
                )
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception("task.complete_failed", extra={"task_id": str(task_id), "error": str(exc)})
                raise UnavailableError("Failed to update task") from exc

            observe_task_transition(TaskStatus.COMPLETED.value)
            logger.info(
                "task.completed",
                extra={"task_id": str(after.id), "tenant_id": after.tenant_id, "status": after.status},
            )
            events.publish(
                {
                    "event_id": str(uuid.uuid4()),
                    "event_type": "crm.task.completed",
                    "occurred_at": evaluated_at.isoformat(),
                    "actor_user_id": principal.user_id,
                    "tenant_id": after.tenant_id,
                    "version": 1,
                    "payload": {"task_id": str(after.id), "completed_at": evaluated_at.isoformat()},
                }
            )
            return after

    def list_due_today(
        self,
        session: Session,
        principal: Principal,
        as_of: datetime | None = None,
        *,
        cursor: str | None = None,
        limit: int | None = None,
        timezone_name: str | None = None,
    ) -> list[TaskRead]:
        """One page of open tasks due on the reference day of ``as_of``."""

        start, end = self._due_window(as_of, timezone_name)
        offset = int(cursor) if cursor and cursor.isdigit() else 0
        page_size = limit or get_settings().due_today_page_size
        rows = TaskRepository(session).query(
            principal,
            exclude_status=TaskStatus.COMPLETED,
            due_from=start,
            due_to=end,
            offset=offset,
            limit=page_size,
        )
        return [self._to_read(row) for row in rows]

    def iter_due_today(
        self,
        session: Session,
        principal: Principal,
        as_of: datetime | None = None,
        *,
        cursor: str | None = None,
        page_size: int | None = None,
        timezone_name: str | None = None,
    ) -> Iterator[TaskRead]:
        """Lazily walk every page, resuming after the ``due_today_cursor`` of any yielded task.

        Pages are keyed on ``(due_at, id)`` so completing a task mid-walk
        never shifts the rows that are still to come.
        """

        start, end = self._due_window(as_of, timezone_name)
        size = page_size or get_settings().due_today_page_size
        after = parse_due_today_cursor(cursor) if cursor else None
        repository = TaskRepository(session)
        while True:
            rows = repository.query(
                principal,
                exclude_status=TaskStatus.COMPLETED,
                due_from=start,
                due_to=end,
                after=after,
                limit=size,
            )
            for row in rows:
                yield self._to_read(row)
            if len(rows) < size:
                return
            last = self._to_read(rows[-1])
            after = (last.due_at, last.id)

    def _due_window(self, as_of: datetime | None, timezone_name: str | None) -> tuple[datetime, datetime]:
        try:
            return day_bounds(ensure_aware(as_of or utcnow()), reference_timezone(timezone_name))
        except OverflowError:
            raise InvalidArgumentError("as_of is out of range", code="invalid_as_of") from None

    def _completion_noop(self, task: CRMTask) -> TaskRead:
        observe_task_completion_noop()
        logger.info(
            "task.complete_noop",
            extra={"task_id": str(task.id), "tenant_id": task.tenant_id, "status": task.status},
        )
        return self._to_read(task)

    def _load_idempotent(
        self,
        session: Session,
        principal: Principal,
        key: str | None,
        request_hash: str,
    ) -> TaskRead | None:
        if not key or not principal.tenant_id:
            return None
        record = session.scalar(
            select(CRMIdempotencyKey).where(
                and_(
                    CRMIdempotencyKey.tenant_id == principal.tenant_id,
                    CRMIdempotencyKey.endpoint == self.create_endpoint,
                    CRMIdempotencyKey.key == key,
                )
            )
        )
        if record is None:
            return None
        if record.request_hash != request_hash:
            raise ConflictError("idempotency key payload mismatch", code="idempotency_key_mismatch")
        return TaskRead.model_validate(json.loads(record.response_json))

    def _store_idempotent(
        self,
        session: Session,
        principal: Principal,
        key: str | None,
        request_hash: str,
        response: TaskRead,
    ) -> None:
        if not key or not principal.tenant_id:
            return
        session.add(
            CRMIdempotencyKey(
                tenant_id=principal.tenant_id,
                endpoint=self.create_endpoint,
                key=key,
                request_hash=request_hash,
                response_json=json.dumps(response.model_dump(mode="json")),
            )
        )
        session.flush()

    def _to_read(self, task: CRMTask) -> TaskRead:
        return TaskRead.model_validate(
            {
                "id": task.id,
                "tenant_id": task.tenant_id,
                "application_id": task.application_id,
                "type": task.type,
                "status": task.status,
                "due_at": ensure_aware(task.due_at),
                "completed_at": ensure_aware(task.completed_at) if task.completed_at is not None else None,
                "created_at": ensure_aware(task.created_at),
                "updated_at": ensure_aware(task.updated_at),
                "row_version": task.row_version,
            }
        )


lead_service = LeadService()
application_service = ApplicationService()
task_lifecycle_service = TaskLifecycleService()
