"""
Admin bearer-token verification.

Tokens are issued by the admin auth service; this module only verifies
them and loads the admin row. Claim "sub" (or legacy "id") carries the
admin id.
"""

import logging
from typing import Optional

import jwt
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from rental_admin.core.api_errors import AuthenticationError, ForbiddenError
from rental_admin.core.config import get_settings
from rental_admin.core.database import get_db
from rental_admin.core.models import Admin
from rental_admin.core.permissions import AuthorizationPolicy, get_authorization_policy

logger = logging.getLogger(__name__)


def decode_admin_token(token: str) -> int:
    """Verify JWT signature/expiry and return the admin id."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")

    raw_id = payload.get("sub", payload.get("id"))
    try:
        return int(raw_id)
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid token subject")


def get_current_admin(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Admin:
    """Extract and validate the admin JWT from the Authorization header."""
    if not authorization:
        raise AuthenticationError("Authorization header required")

    if not authorization.startswith("Bearer "):
        raise AuthenticationError("Invalid authorization format")

    admin_id = decode_admin_token(authorization[7:])

    admin = db.get(Admin, admin_id)
    if not admin or not admin.is_active:
        raise AuthenticationError("Admin not found or inactive")
    return admin


def require_permission(permission: str):
    """
    Build a dependency that returns the current admin if the policy allows
    the permission, otherwise raises ForbiddenError.

    Usage:
        @router.post("/x")
        def x(admin: Admin = Depends(require_permission("duplicates:write"))):
            ...
    """

    def dependency(
        admin: Admin = Depends(get_current_admin),
        policy: AuthorizationPolicy = Depends(get_authorization_policy),
    ) -> Admin:
        if not policy.allows(admin, permission):
            logger.warning(f"Admin {admin.id} ({admin.role}) denied {permission}")
            raise ForbiddenError(f"Missing permission: {permission}", permission=permission)
        return admin

    return dependency
