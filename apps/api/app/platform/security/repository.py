from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from app.platform.security.context import Principal
from app.platform.security.memberships import MembershipResolver, resolver_for_session
from app.platform.security.policies import (
    Decision,
    LeadResource,
    ResourceAction,
    TenantResource,
    decide,
    ensure_permitted,
)
from app.platform.security.rls import apply_tenant_filter


class BaseRepository:
    resource = ""

    def __init__(self, session: Session, memberships: MembershipResolver | None = None) -> None:
        self.session = session
        self.memberships = memberships or resolver_for_session(session)

    def apply_scope_query(self, query: Select[Any], principal: Principal) -> Select[Any]:
        return apply_tenant_filter(query, principal)

    def to_resource(self, record: Any) -> LeadResource | TenantResource:
        return TenantResource(tenant_id=record.tenant_id, kind=self.resource, id=getattr(record, "id", None))

    def can_read(self, principal: Principal, record: Any) -> bool:
        return decide(principal, self.to_resource(record), ResourceAction.READ, self.memberships) == Decision.PERMIT

    def validate_write_security(self, principal: Principal, resource: LeadResource | TenantResource) -> None:
        ensure_permitted(principal, resource, ResourceAction.WRITE, self.memberships)
