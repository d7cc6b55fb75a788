"""
Admin authorization policy.

Role -> default permissions, overridable per admin. The policy is an
explicit object handed to each request through a FastAPI dependency,
so tests and deployments can swap the map without touching globals.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

WILDCARD = "*"

DUPLICATES_READ = "duplicates:read"
DUPLICATES_WRITE = "duplicates:write"

ROLE_PERMISSION_MAP: Dict[str, List[str]] = {
    "super_admin": [WILDCARD],
    "ops_admin": [
        "workflow:read",
        "workflow:write",
        "sla:read",
        "reconciliation:read",
        "exports:run",
        "rules:read",
        "notes:read",
        "notes:write",
        "audit:read",
        DUPLICATES_READ,
        DUPLICATES_WRITE,
    ],
    "finance_admin": [
        "payments:read",
        "payments:write",
        "reconciliation:read",
        "exports:run",
        "sla:read",
        "audit:read",
    ],
    "support_admin": [
        "workflow:read",
        "complaints:write",
        "notes:read",
        "notes:write",
        "audit:read",
    ],
    "readonly_admin": [
        "workflow:read",
        "sla:read",
        "reconciliation:read",
        "rules:read",
        "notes:read",
        "audit:read",
    ],
}


class AuthorizationPolicy:
    """
    Resolves effective permissions for an admin.

    An admin's own permission list, when non-empty, replaces the role
    defaults entirely.
    """

    def __init__(self, role_permissions: Optional[Dict[str, Iterable[str]]] = None):
        source = role_permissions if role_permissions is not None else ROLE_PERMISSION_MAP
        self.role_permissions: Dict[str, Set[str]] = {
            role: set(perms) for role, perms in source.items()
        }

    def effective_permissions(self, admin) -> Set[str]:
        """Permissions the admin actually holds."""
        if not admin or not getattr(admin, "is_active", False):
            return set()
        overrides = getattr(admin, "permissions", None) or []
        if overrides:
            return set(overrides)
        return set(self.role_permissions.get(admin.role, set()))

    def allows(self, admin, permission: str) -> bool:
        perms = self.effective_permissions(admin)
        return WILDCARD in perms or permission in perms


_default_policy: Optional[AuthorizationPolicy] = None


def get_authorization_policy() -> AuthorizationPolicy:
    """FastAPI dependency returning the process-wide default policy."""
    global _default_policy
    if _default_policy is None:
        _default_policy = AuthorizationPolicy()
    return _default_policy
