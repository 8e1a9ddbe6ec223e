from __future__ import annotations

from typing import Any

from sqlalchemy import false, or_
from sqlalchemy.sql import Select

from app.platform.security.context import Principal
from app.platform.security.memberships import MembershipResolver


def _scoped_entities(query: Select[Any]) -> list[Any]:
    entities: list[Any] = []
    for description in query.column_descriptions:
        model = description.get("entity")
        if model is not None and hasattr(model, "tenant_id") and model not in entities:
            entities.append(model)
    return entities


def apply_tenant_filter(query: Select[Any], principal: Principal) -> Select[Any]:
    """Restrict every tenant-scoped entity in ``query`` to the principal's tenant."""

    if not principal.tenant_id:
        return query.where(false())

    for model in _scoped_entities(query):
        query = query.where(getattr(model, "tenant_id") == principal.tenant_id)
    return query


def apply_lead_read_filter(query: Select[Any], principal: Principal, memberships: MembershipResolver) -> Select[Any]:
    """SQL form of the lead read rule.

    Must select exactly the rows for which the policy evaluator permits a
    read: same tenant, then admin, owner or member of the lead's team.
    """

    query = apply_tenant_filter(query, principal)
    if not principal.tenant_id or principal.is_admin:
        return query

    teams = memberships.memberships_of(principal.user_id)
    for model in _scoped_entities(query):
        if not hasattr(model, "owner_id") or not hasattr(model, "team_id"):
            continue
        visibility = [getattr(model, "owner_id") == principal.user_id]
        if teams:
            visibility.append(getattr(model, "team_id").in_(sorted(teams, key=str)))
        query = query.where(or_(*visibility))
    return query
