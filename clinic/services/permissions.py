"""
Permission store and guard.

``permissions_for`` answers what a user may do in a context: everything
in individual mode, the stored member bundle in organization mode.
``check_permission``/``require_permission`` are side-effect free
predicates over an already resolved set; ``ensure_permission`` is the
enforcing variant used by the services before any write.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional

from clinic.exceptions import AuthorizationError, NoMembershipError
from clinic.models import OrganizationMember
from clinic.services.context import current_scope

PERMISSION_NAMES = (
    'write_off_drugs',
    'manage_members',
    'manage_inventory',
    'diagnose_patients',
    'dispense_drugs',
    'view_reports',
)

ACTION_LABELS = {
    'write_off_drugs': 'write off drugs',
    'manage_members': 'manage organization members',
    'manage_inventory': 'manage the drug inventory',
    'diagnose_patients': 'diagnose patients',
    'dispense_drugs': 'dispense drugs',
    'view_reports': 'view reports',
}

GLOBAL_ADMIN_ROLES = {'admin', 'super_admin'}


@dataclass(frozen=True)
class PermissionSet:
    write_off_drugs: bool = False
    manage_members: bool = False
    manage_inventory: bool = False
    diagnose_patients: bool = False
    dispense_drugs: bool = False
    view_reports: bool = False

    @classmethod
    def full(cls) -> 'PermissionSet':
        return cls(**{name: True for name in PERMISSION_NAMES})

    @classmethod
    def from_bundle(cls, bundle: Optional[dict]) -> 'PermissionSet':
        bundle = bundle or {}
        return cls(**{name: bundle.get(name) is True for name in PERMISSION_NAMES})

    def allows(self, name: str) -> bool:
        return getattr(self, name)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class GuardResult:
    loading: bool
    allowed: bool
    error: Optional[str] = None


def _validate_name(name: str) -> None:
    if name not in PERMISSION_NAMES:
        raise ValueError(f'unknown permission: {name}')


def denial_message(name: str, action: Optional[str] = None) -> str:
    return f"You don't have permission to {action or ACTION_LABELS.get(name, name)}"


def permissions_for(user, scope) -> PermissionSet:
    if not scope.is_organization:
        return PermissionSet.full()
    membership = OrganizationMember.objects.filter(
        user=user, organization_id=scope.organization_id
    ).only('permissions').first()
    if membership is None:
        raise NoMembershipError()
    return PermissionSet.from_bundle(membership.permissions)


def check_permission(name: str, permissions: Optional[PermissionSet]) -> Optional[bool]:
    """``None`` while the set is unresolved, otherwise allow/deny."""
    _validate_name(name)
    if permissions is None:
        return None
    return permissions.allows(name)


def require_permission(name: str, permissions: Optional[PermissionSet],
                       action: Optional[str] = None) -> GuardResult:
    allowed = check_permission(name, permissions)
    if allowed is None:
        return GuardResult(loading=True, allowed=False)
    if not allowed:
        return GuardResult(loading=False, allowed=False, error=denial_message(name, action))
    return GuardResult(loading=False, allowed=True)


def ensure_permission(user, scope, name: str, action: Optional[str] = None) -> PermissionSet:
    permissions = permissions_for(user, scope)
    result = require_permission(name, permissions, action)
    if not result.allowed:
        raise AuthorizationError(result.error)
    return permissions


def permissions_for_request(request) -> PermissionSet:
    cached = getattr(request, '_clinic_permissions', None)
    if cached is None:
        cached = permissions_for(request.user, current_scope(request))
        request._clinic_permissions = cached
    return cached


def active_membership(user, organization_id) -> Optional[OrganizationMember]:
    return OrganizationMember.objects.filter(
        user=user, organization_id=organization_id, status='active'
    ).first()


def is_org_admin(user, organization_id) -> bool:
    membership = active_membership(user, organization_id)
    return bool(membership and membership.role == 'admin')


def can_manage_members(user, organization_id) -> bool:
    membership = active_membership(user, organization_id)
    if membership is None:
        return False
    return membership.role == 'admin' or (membership.permissions or {}).get('manage_members') is True


def is_global_admin(user) -> bool:
    return bool(user and user.is_authenticated and (
        getattr(user, 'role', None) in GLOBAL_ADMIN_ROLES or user.is_superuser
    ))
