from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, or_, select, update

from app.crm.models import CRMApplication, CRMLead, CRMTask, TaskStatus
from app.platform.security.context import Principal
from app.platform.security.policies import APPLICATION_RESOURCE, LEAD_RESOURCE, TASK_RESOURCE, LeadResource
from app.platform.security.repository import BaseRepository
from app.platform.security.rls import apply_lead_read_filter


class LeadRepository(BaseRepository):
    resource = LEAD_RESOURCE

    def apply_scope_query(self, query: Select[Any], principal: Principal) -> Select[Any]:
        return apply_lead_read_filter(query, principal, self.memberships)

    def to_resource(self, record: CRMLead) -> LeadResource:
        return LeadResource(tenant_id=record.tenant_id, owner_id=record.owner_id, team_id=record.team_id, id=record.id)

    def get(self, lead_id: uuid.UUID) -> CRMLead | None:
        return self.session.scalar(select(CRMLead).where(CRMLead.id == lead_id))


class ApplicationRepository(BaseRepository):
    """Application lookups; the lifecycle only needs ``get_tenant_id``."""

    resource = APPLICATION_RESOURCE

    def get(self, application_id: uuid.UUID) -> CRMApplication | None:
        return self.session.scalar(select(CRMApplication).where(CRMApplication.id == application_id))

    def get_tenant_id(self, application_id: uuid.UUID) -> str | None:
        tenant_id = self.session.scalar(select(CRMApplication.tenant_id).where(CRMApplication.id == application_id))
        return str(tenant_id) if tenant_id is not None else None


class TaskRepository(BaseRepository):
    """Persistence boundary for tasks.

    ``update_status`` is a compare-and-set: the row only changes when it is
    still in ``from_status``, so two concurrent completions cannot both win.
    """

    resource = TASK_RESOURCE

    def get(self, task_id: uuid.UUID, *, refresh: bool = False) -> CRMTask | None:
        stmt = select(CRMTask).where(CRMTask.id == task_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        return self.session.scalar(stmt)

    def insert(self, task: CRMTask) -> CRMTask:
        self.session.add(task)
        self.session.flush()
        return task

    def update_status(
        self,
        task_id: uuid.UUID,
        *,
        from_status: TaskStatus,
        to_status: TaskStatus,
        at: datetime,
    ) -> CRMTask | None:
        values: dict[str, Any] = {
            "status": to_status.value,
            "updated_at": at,
            "row_version": CRMTask.row_version + 1,
        }
        if to_status == TaskStatus.COMPLETED:
            values["completed_at"] = at

        result = self.session.execute(
            update(CRMTask)
            .where(and_(CRMTask.id == task_id, CRMTask.status == from_status.value))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        return self.get(task_id, refresh=True)

    def query(
        self,
        principal: Principal,
        *,
        exclude_status: TaskStatus | None = None,
        due_from: datetime | None = None,
        due_to: datetime | None = None,
        after: tuple[datetime, uuid.UUID] | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> list[CRMTask]:
        stmt = self.apply_scope_query(select(CRMTask), principal)
        if exclude_status is not None:
            stmt = stmt.where(CRMTask.status != exclude_status.value)
        if due_from is not None:
            stmt = stmt.where(CRMTask.due_at >= due_from)
        if due_to is not None:
            stmt = stmt.where(CRMTask.due_at <= due_to)
        if after is not None:
            after_due_at, after_id = after
            stmt = stmt.where(
                or_(CRMTask.due_at > after_due_at, and_(CRMTask.due_at == after_due_at, CRMTask.id > after_id))
            )
        stmt = stmt.order_by(CRMTask.due_at.asc(), CRMTask.id.asc()).offset(offset).limit(limit)
        return list(self.session.scalars(stmt).all())
