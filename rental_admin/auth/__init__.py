"""
Admin authentication for the console API.

- Bearer JWT verification
- Permission-gated FastAPI dependencies
"""

from rental_admin.auth.admin_auth import decode_admin_token, get_current_admin, require_permission

__all__ = ["decode_admin_token", "get_current_admin", "require_permission"]
