"""
DRF permission classes for global roles and context permissions.
"""
from rest_framework.permissions import BasePermission

from clinic.services.permissions import (
    is_global_admin,
    permissions_for_request,
    require_permission,
)


class IsGlobalAdmin(BasePermission):
    """Allow access only to users with the admin or super_admin role."""
    message = 'Administrator access required'

    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        return is_global_admin(getattr(request, "user", None))


class IsVerified(BasePermission):
    message = 'Email not confirmed'

    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        user = getattr(request, "user", None)
        return bool(user and user.is_authenticated and user.email_verified)


def HasContextPermission(name: str, action: str = None):
    """Build a permission class that checks ``name`` in the request's active context.

    Individual mode always passes; in organization mode the member's
    stored bundle decides.
    """

    class _HasContextPermission(BasePermission):
        def has_permission(self, request, view) -> bool:  # type: ignore[override]
            user = getattr(request, "user", None)
            if not (user and user.is_authenticated):
                return False
            result = require_permission(name, permissions_for_request(request), action)
            if not result.allowed:
                self.message = result.error
            return result.allowed

    _HasContextPermission.__name__ = f"HasContextPermission_{name}"
    return _HasContextPermission
