from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import StrEnum
from threading import Lock

from app import audit
from app.metrics import observe_authz_decision, observe_tenant_isolation_denial
from app.platform.security.context import Principal, Role
from app.platform.security.errors import AuthorizationError, TenantIsolationError
from app.platform.security.memberships import MembershipResolver


logger = logging.getLogger("app.authz")

LEAD_RESOURCE = "crm.lead"
TASK_RESOURCE = "crm.task"
APPLICATION_RESOURCE = "crm.application"

WRITER_ROLES = frozenset({Role.ADMIN, Role.COUNSELOR})


class ResourceAction(StrEnum):
    READ = "read"
    WRITE = "write"


class Decision(StrEnum):
    PERMIT = "PERMIT"
    DENY = "DENY"


class DenyReason(StrEnum):
    TENANT = "tenant_isolation"
    ROLE = "role"
    VISIBILITY = "visibility"
    UNAUTHENTICATED = "unauthenticated"


@dataclass(frozen=True, slots=True)
class LeadResource:
    tenant_id: str
    owner_id: str | None
    team_id: uuid.UUID | None
    id: uuid.UUID | None = None


@dataclass(frozen=True, slots=True)
class TenantResource:
    """Any tenant-scoped record whose visibility is tenant-wide (tasks, applications)."""

    tenant_id: str
    kind: str = TASK_RESOURCE
    id: uuid.UUID | None = None


@dataclass(frozen=True, slots=True)
class DecisionResult:
    decision: Decision
    reason: DenyReason | None = None

    @property
    def permitted(self) -> bool:
        return self.decision == Decision.PERMIT


_PERMIT = DecisionResult(Decision.PERMIT)


def resource_name(resource: LeadResource | TenantResource) -> str:
    if isinstance(resource, LeadResource):
        return LEAD_RESOURCE
    return resource.kind


def tenant_matches(principal: Principal, tenant_id: str | None) -> bool:
    return bool(principal.tenant_id) and tenant_id is not None and str(tenant_id) == principal.tenant_id


class PolicyEvaluator:
    """Fixed tenant/role/team rules for leads and tenant-wide rules for tasks.

    Tenant isolation is always evaluated first; no role branch runs for a
    resource owned by another tenant.
    """

    def explain(
        self,
        principal: Principal,
        resource: LeadResource | TenantResource,
        action: ResourceAction,
        memberships: MembershipResolver,
    ) -> DecisionResult:
        if not tenant_matches(principal, resource.tenant_id):
            return DecisionResult(Decision.DENY, DenyReason.TENANT)

        if isinstance(resource, TenantResource):
            return _PERMIT

        if action == ResourceAction.WRITE:
            if not principal.is_authenticated:
                return DecisionResult(Decision.DENY, DenyReason.UNAUTHENTICATED)
            if principal.role not in WRITER_ROLES:
                return DecisionResult(Decision.DENY, DenyReason.ROLE)
            return _PERMIT

        if principal.is_admin:
            return _PERMIT
        if resource.owner_id is not None and resource.owner_id == principal.user_id:
            return _PERMIT
        if resource.team_id is not None and resource.team_id in memberships.memberships_of(principal.user_id):
            return _PERMIT
        return DecisionResult(Decision.DENY, DenyReason.VISIBILITY)

    def decide(
        self,
        principal: Principal,
        resource: LeadResource | TenantResource,
        action: ResourceAction,
        memberships: MembershipResolver,
    ) -> Decision:
        result = self.explain(principal, resource, action, memberships)
        _observe(principal, resource, action, result)
        return result.decision


_POLICY_EVALUATOR = PolicyEvaluator()
_POLICY_LOCK = Lock()


def get_policy_evaluator() -> PolicyEvaluator:
    """Get the active policy evaluator instance."""

    return _POLICY_EVALUATOR


def set_policy_evaluator(evaluator: PolicyEvaluator) -> None:
    """Set the active policy evaluator instance."""

    global _POLICY_EVALUATOR
    with _POLICY_LOCK:
        _POLICY_EVALUATOR = evaluator


def decide(
    principal: Principal,
    resource: LeadResource | TenantResource,
    action: ResourceAction,
    memberships: MembershipResolver,
) -> Decision:
    return get_policy_evaluator().decide(principal, resource, action, memberships)


def ensure_permitted(
    principal: Principal,
    resource: LeadResource | TenantResource,
    action: ResourceAction,
    memberships: MembershipResolver,
) -> None:
    """Raise ``AuthorizationError`` unless the principal may perform ``action``."""

    result = get_policy_evaluator().explain(principal, resource, action, memberships)
    _observe(principal, resource, action, result)
    if result.permitted:
        return

    name = resource_name(resource)
    if result.reason == DenyReason.TENANT:
        raise TenantIsolationError(resource=name, action=action.value)
    raise AuthorizationError(f"{action.value} denied for resource '{name}' ({result.reason})")


def _observe(
    principal: Principal,
    resource: LeadResource | TenantResource,
    action: ResourceAction,
    result: DecisionResult,
) -> None:
    name = resource_name(resource)
    observe_authz_decision(resource=name, action=action.value, decision=result.decision.value)
    if result.permitted:
        return

    if result.reason == DenyReason.TENANT:
        observe_tenant_isolation_denial(resource=name, action=action.value)

    logger.info(
        "authz.denied",
        extra={
            "resource": name,
            "action": action.value,
            "decision": result.decision.value,
            "reason": result.reason.value if result.reason else None,
            "tenant_id": principal.tenant_id,
            "user_id": principal.user_id,
        },
    )
    audit.record(
        actor_user_id=principal.user_id,
        tenant_id=principal.tenant_id,
        entity_type="security.authz",
        entity_id=str(resource.id) if resource.id is not None else "unknown",
        action="authz.denied",
        before=None,
        after={
            "resource": name,
            "action": action.value,
            "reason": result.reason.value if result.reason else None,
            "resource_tenant_id": resource.tenant_id,
        },
        correlation_id=principal.correlation_id,
    )
