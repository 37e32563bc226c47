"""
Security guards for role-based access control.

Provides dependencies for protecting endpoints.
"""

from typing import List
from fastapi import Depends
from backend.app.core.dependencies import get_current_user
from backend.app.core.exceptions import InsufficientPermissionsError
from backend.app.models.enums import UserRole

# Roles allowed to run billing and check-in operations
STAFF_ROLES = [UserRole.OWNER, UserRole.ADMIN, UserRole.INSTRUCTOR]

# Roles allowed to cancel or refund an invoice
ADMIN_ROLES = [UserRole.OWNER, UserRole.ADMIN]


def role_of(current_user: dict) -> UserRole:
    """Resolve the role claim of a decoded token, raising 403 if it is missing or unknown."""
    user_role_str = current_user.get("role")

    if not user_role_str:
        raise InsufficientPermissionsError("Role information missing from token")

    try:
        return UserRole(user_role_str)
    except ValueError:
        raise InsufficientPermissionsError("Invalid role in token")


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.post("/invoices")
        async def create_invoice(current_user: dict = Depends(require_role(STAFF_ROLES))):
            ...

    Raises:
        InsufficientPermissionsError (403) if user role is not in allowed_roles
    """
    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        user_role = role_of(current_user)

        if user_role not in allowed_roles:
            raise InsufficientPermissionsError(
                f"Access denied. Required role: {', '.join([r.value for r in allowed_roles])}"
            )

        return current_user

    return role_checker


def require_staff(current_user: dict = Depends(require_role(STAFF_ROLES))) -> dict:
    """Dependency for endpoints open to owners, admins and instructors."""
    return current_user
