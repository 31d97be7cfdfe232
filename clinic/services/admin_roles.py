"""
Global (system wide) user roles.

Only admin-level users (``admin`` or ``super_admin``) may change roles,
and only a ``super_admin`` may grant or revoke ``super_admin``.  Every
change is appended to :class:`clinic.models.RoleChangeHistory`.
"""
from __future__ import annotations

import logging
from typing import Optional

from django.db import transaction
from django.db.models import Count, Q

from clinic.exceptions import AuthorizationError, NotFoundError, ValidationError
from clinic.models import (
    Diagnosis,
    Drug,
    Organization,
    OrganizationMember,
    Patient,
    RoleChangeHistory,
    User,
)
from clinic.services.audit import log_action
from clinic.services.permissions import is_global_admin

logger = logging.getLogger(__name__)

ROLES = tuple(code for code, _ in User.ROLE_CHOICES)


def is_admin(user) -> bool:
    return is_global_admin(user)


def is_super_admin(user) -> bool:
    return bool(user and user.is_authenticated and (user.role == 'super_admin' or user.is_superuser))


def require_admin(user) -> None:
    if not is_admin(user):
        raise AuthorizationError('Administrator access required')


def list_users(actor, *, role: Optional[str] = None, term: Optional[str] = None):
    require_admin(actor)
    qs = User.objects.all()
    if role:
        qs = qs.filter(role=role)
    if term:
        qs = qs.filter(Q(email__icontains=term) | Q(full_name__icontains=term))
    return qs.order_by('-date_joined', '-id')


def get_user(pk) -> User:
    user = User.objects.filter(pk=pk).first()
    if user is None:
        raise NotFoundError('User not found')
    return user


def change_user_role(actor, user_id, new_role: str, reason: str = '') -> User:
    require_admin(actor)
    if new_role not in ROLES:
        raise ValidationError(f'Unknown role: {new_role}')
    with transaction.atomic():
        target = User.objects.select_for_update().filter(pk=user_id).first()
        if target is None:
            raise NotFoundError('User not found')
        old_role = target.role
        if 'super_admin' in (old_role, new_role) and not is_super_admin(actor):
            raise AuthorizationError('Only a super admin can grant or revoke super admin')
        if target.pk == actor.pk and old_role != new_role:
            raise ValidationError('You cannot change your own role')
        if old_role == new_role:
            return target
        target.role = new_role
        target.save(update_fields=['role'])
        RoleChangeHistory.objects.create(
            user=target, changed_by=actor, old_role=old_role, new_role=new_role, reason=(reason or '').strip(),
        )
    logger.info('role of user %s changed from %s to %s by %s', target.pk, old_role, new_role, actor.pk)
    log_action(user=actor, action='role_change', object_type='user', object_id=target.pk,
               detail={'old': old_role, 'new': new_role})
    return target


def set_user_active(actor, user_id, active: bool) -> User:
    """Disable or re-enable an account; users are never hard-deleted."""
    require_admin(actor)
    target = get_user(user_id)
    if target.pk == actor.pk:
        raise ValidationError('You cannot disable your own account')
    if target.role == 'super_admin' and not is_super_admin(actor):
        raise AuthorizationError('Only a super admin can disable a super admin')
    target.is_active = bool(active)
    target.save(update_fields=['is_active'])
    log_action(user=actor, action='user_enable' if active else 'user_disable', object_type='user',
               object_id=target.pk)
    return target


def role_history(actor, user_id=None):
    require_admin(actor)
    qs = RoleChangeHistory.objects.select_related('user', 'changed_by')
    if user_id is not None:
        qs = qs.filter(user_id=user_id)
    return qs


def system_stats(actor) -> dict:
    require_admin(actor)
    roles = User.objects.aggregate(
        total=Count('id'),
        verified=Count('id', filter=Q(email_verified=True)),
        **{role: Count('id', filter=Q(role=role)) for role in ROLES},
    )
    return {
        'totalUsers': roles['total'],
        'verifiedUsers': roles['verified'],
        'usersByRole': {role: roles[role] for role in ROLES},
        'totalOrganizations': Organization.objects.count(),
        'activeMemberships': OrganizationMember.objects.filter(status='active').count(),
        'totalPatients': Patient.objects.count(),
        'totalDiagnoses': Diagnosis.objects.count(),
        'totalDrugs': Drug.objects.filter(is_active=True).count(),
    }
