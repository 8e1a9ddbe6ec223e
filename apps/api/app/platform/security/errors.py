from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for tenant and role policy failures."""


class TenantIsolationError(AuthorizationError):
    """Raised when a principal touches a resource owned by another tenant."""

    def __init__(self, resource: str, action: str) -> None:
        self.resource = resource
        self.action = action
        super().__init__(f"Cross-tenant {action} denied for resource '{resource}'")
