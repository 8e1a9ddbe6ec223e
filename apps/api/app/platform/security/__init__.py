from app.platform.security.context import Principal, Role
from app.platform.security.errors import AuthorizationError, TenantIsolationError
from app.platform.security.memberships import (
    CachedMembershipResolver,
    DbMembershipResolver,
    InMemoryMembershipResolver,
    MembershipResolver,
    get_membership_resolver,
    set_membership_resolver,
)
from app.platform.security.policies import (
    Decision,
    LeadResource,
    PolicyEvaluator,
    ResourceAction,
    TenantResource,
    decide,
    ensure_permitted,
    get_policy_evaluator,
    set_policy_evaluator,
)
from app.platform.security.repository import BaseRepository
from app.platform.security.rls import apply_lead_read_filter, apply_tenant_filter

__all__ = [
    "Principal",
    "Role",
    "AuthorizationError",
    "TenantIsolationError",
    "MembershipResolver",
    "InMemoryMembershipResolver",
    "DbMembershipResolver",
    "CachedMembershipResolver",
    "get_membership_resolver",
    "set_membership_resolver",
    "Decision",
    "LeadResource",
    "TenantResource",
    "ResourceAction",
    "PolicyEvaluator",
    "decide",
    "ensure_permitted",
    "get_policy_evaluator",
    "set_policy_evaluator",
    "BaseRepository",
    "apply_lead_read_filter",
    "apply_tenant_filter",
]
