"""
Organizations and their members.

Member status and removal need an active membership that is either an
admin or carries the ``manage_members`` flag; only admins may touch
another admin's row.  Role and permission changes are admin-only and
nobody edits their own row.  The creator's membership can only be
changed by leaving.  Changes to a membership are pushed to the affected
user's sessions so their eligible contexts refresh.
"""
from __future__ import annotations

import logging
from typing import Optional

from django.db import transaction
from django.db.models import Count, Q
from django.utils import timezone

from clinic.exceptions import AuthorizationError, NotFoundError, ValidationError
from clinic.models import (
    MEMBER_PERMISSION_FLAGS,
    Organization,
    OrganizationInvitation,
    OrganizationMember,
    admin_member_permissions,
    default_organization_settings,
)
from clinic.services.audit import log_action
from clinic.services.events import publish_membership_change
from clinic.services.permissions import active_membership, can_manage_members, is_org_admin

logger = logging.getLogger(__name__)

MEMBER_ROLES = ('admin', 'member')
MEMBER_STATUSES = ('active', 'pending', 'suspended')
SETTING_KEYS = tuple(default_organization_settings())


def _clean_settings(value: Optional[dict], base: Optional[dict] = None) -> dict:
    merged = dict(base or default_organization_settings())
    for key, flag in (value or {}).items():
        if key not in SETTING_KEYS:
            raise ValidationError(f'Unknown organization setting: {key}')
        if not isinstance(flag, bool):
            raise ValidationError(f'Organization setting {key} must be true or false')
        merged[key] = flag
    return merged


def _clean_name(name: Optional[str]) -> str:
    name = (name or '').strip()
    if len(name) < 2:
        raise ValidationError('Organization name must be at least 2 characters')
    if len(name) > 255:
        raise ValidationError('Organization name must be at most 255 characters')
    return name


def get_organization(pk) -> Organization:
    org = Organization.objects.filter(pk=pk).first()
    if org is None:
        raise NotFoundError('Organization not found')
    return org


def require_member_manager(user, organization_id) -> None:
    if not can_manage_members(user, organization_id):
        raise AuthorizationError("You don't have permission to manage organization members")


def require_org_admin(user, organization_id) -> None:
    if not is_org_admin(user, organization_id):
        raise AuthorizationError('Only organization admins can do this')


def organizations_for(user):
    """Every membership of ``user`` whatever its status, newest first."""
    return OrganizationMember.objects.filter(user=user).select_related('organization')


def create_organization(user, name: str, description: str = '', settings: Optional[dict] = None) -> Organization:
    with transaction.atomic():
        org = Organization.objects.create(
            name=_clean_name(name),
            description=(description or '').strip(),
            settings=_clean_settings(settings),
            created_by=user,
        )
        OrganizationMember.objects.create(
            organization=org, user=user, role='admin', status='active',
            permissions=admin_member_permissions(), invited_by=user,
        )
    log_action(user=user, action='organization_create', object_type='organization', object_id=org.pk,
               detail={'name': org.name})
    publish_membership_change(user.pk, org.pk, 'joined')
    return org


def update_organization(user, organization_id, *, name: Optional[str] = None,
                        description: Optional[str] = None, settings: Optional[dict] = None) -> Organization:
    require_org_admin(user, organization_id)
    org = get_organization(organization_id)
    if name is not None:
        org.name = _clean_name(name)
    if description is not None:
        org.description = description.strip()
    if settings is not None:
        org.settings = _clean_settings(settings, base=org.settings)
    org.save()
    log_action(user=user, action='organization_update', object_type='organization', object_id=org.pk)
    return org


def delete_organization(user, organization_id) -> None:
    """Delete an organization with all of its members, invitations and records."""
    org = get_organization(organization_id)
    if org.created_by_id != user.pk:
        raise AuthorizationError('Only the creator can delete an organization')
    member_ids = list(org.members.values_list('user_id', flat=True))
    name = org.name
    org.delete()
    logger.info('organization %s deleted by user %s', organization_id, user.pk)
    log_action(user=user, action='organization_delete', object_type='organization', object_id=organization_id,
               detail={'name': name, 'members': len(member_ids)})
    for member_id in member_ids:
        publish_membership_change(member_id, organization_id, 'removed')


def require_active_member(user, organization_id) -> None:
    get_organization(organization_id)
    if not OrganizationMember.objects.filter(
        user=user, organization_id=organization_id, status='active'
    ).exists():
        raise AuthorizationError("You don't have permission to view this organization")


def organization_stats(user, organization_id) -> dict:
    require_active_member(user, organization_id)
    counts = OrganizationMember.objects.filter(organization_id=organization_id).aggregate(
        total=Count('id'),
        admins=Count('id', filter=Q(role='admin')),
        members=Count('id', filter=Q(role='member')),
    )
    pending = OrganizationInvitation.objects.filter(
        organization_id=organization_id, status='pending', expires_at__gt=timezone.now()
    ).count()
    return {
        'totalMembers': counts['total'],
        'adminCount': counts['admins'],
        'memberCount': counts['members'],
        'pendingInvitations': pending,
    }


def list_members(user, organization_id):
    require_active_member(user, organization_id)
    return (
        OrganizationMember.objects.filter(organization_id=organization_id)
        .select_related('user', 'invited_by')
        .order_by('-joined_at', '-id')
    )


def _member(organization_id, member_id) -> OrganizationMember:
    member = (
        OrganizationMember.objects.select_related('user', 'organization')
        .filter(organization_id=organization_id, pk=member_id)
        .first()
    )
    if member is None:
        raise NotFoundError('Member not found')
    return member


def _guard_target(user, member: OrganizationMember, *, what: str) -> None:
    """Own rows and the creator's row are off limits; admin rows need an admin."""
    if member.user_id == user.pk:
        raise ValidationError(f'You cannot change your own {what}')
    if member.user_id == member.organization.created_by_id:
        raise AuthorizationError("The organization creator's membership cannot be changed")
    if member.role == 'admin' and not is_org_admin(user, member.organization_id):
        raise AuthorizationError('Only organization admins can manage other admins')


def _other_active_admins(member: OrganizationMember) -> int:
    return OrganizationMember.objects.filter(
        organization_id=member.organization_id, role='admin', status='active'
    ).exclude(pk=member.pk).count()


def clean_permissions(flags: Optional[dict]) -> dict:
    cleaned = {}
    for key, value in (flags or {}).items():
        if key not in MEMBER_PERMISSION_FLAGS:
            raise ValidationError(f'Unknown permission: {key}')
        if not isinstance(value, bool):
            raise ValidationError(f'Permission {key} must be true or false')
        cleaned[key] = value
    return cleaned


def require_grantable(user, organization_id, role: str, flags: dict) -> None:
    """A non-admin manager may only hand out the member role and flags it holds itself."""
    if is_org_admin(user, organization_id):
        return
    if role == 'admin':
        raise AuthorizationError('Only organization admins can invite admins')
    held = active_membership(user, organization_id)
    own = (held.permissions or {}) if held else {}
    extra = sorted(k for k, v in flags.items() if v and own.get(k) is not True)
    if extra:
        raise AuthorizationError(f"You cannot grant permissions you don't hold: {', '.join(extra)}")


def update_member_permissions(user, organization_id, member_id, flags: dict) -> OrganizationMember:
    """Merge the given flags into the member's stored bundle.  Admins only."""
    require_org_admin(user, organization_id)
    changes = clean_permissions(flags)
    member = _member(organization_id, member_id)
    _guard_target(user, member, what='permissions')
    bundle = dict(member.permissions or {})
    bundle.update(changes)
    member.permissions = bundle
    member.save(update_fields=['permissions', 'updated_at'])
    log_action(user=user, action='member_permissions', object_type='organization_member', object_id=member.pk,
               detail={'organization': organization_id, 'changes': changes})
    publish_membership_change(member.user_id, organization_id, 'permissions')
    return member


def update_member_role(user, organization_id, member_id, role: str) -> OrganizationMember:
    require_org_admin(user, organization_id)
    if role not in MEMBER_ROLES:
        raise ValidationError('Role must be admin or member')
    member = _member(organization_id, member_id)
    _guard_target(user, member, what='role')
    if member.role == 'admin' and role != 'admin' and not _other_active_admins(member):
        raise ValidationError('An organization needs at least one admin')
    old = member.role
    member.role = role
    member.save(update_fields=['role', 'updated_at'])
    log_action(user=user, action='member_role', object_type='organization_member', object_id=member.pk,
               detail={'organization': organization_id, 'old': old, 'new': role})
    publish_membership_change(member.user_id, organization_id, 'role')
    return member


def update_member_status(user, organization_id, member_id, status: str) -> OrganizationMember:
    require_member_manager(user, organization_id)
    if status not in MEMBER_STATUSES:
        raise ValidationError('Status must be active, pending or suspended')
    member = _member(organization_id, member_id)
    _guard_target(user, member, what='status')
    if member.role == 'admin' and status != 'active' and not _other_active_admins(member):
        raise ValidationError('An organization needs at least one active admin')
    old = member.status
    member.status = status
    member.save(update_fields=['status', 'updated_at'])
    log_action(user=user, action='member_status', object_type='organization_member', object_id=member.pk,
               detail={'organization': organization_id, 'old': old, 'new': status})
    publish_membership_change(member.user_id, organization_id, 'status')
    return member


def remove_member(user, organization_id, member_id) -> None:
    require_member_manager(user, organization_id)
    member = _member(organization_id, member_id)
    if member.user_id == user.pk:
        raise ValidationError('Use leave to remove yourself from an organization')
    _guard_target(user, member, what='membership')
    if member.role == 'admin' and not _other_active_admins(member):
        raise ValidationError('An organization needs at least one admin')
    target = member.user_id
    member.delete()
    log_action(user=user, action='member_remove', object_type='organization_member', object_id=member_id,
               detail={'organization': organization_id, 'user': target})
    publish_membership_change(target, organization_id, 'removed')


def leave_organization(user, organization_id) -> None:
    member = OrganizationMember.objects.filter(user=user, organization_id=organization_id).first()
    if member is None:
        raise NotFoundError('You are not a member of this organization')
    if member.role == 'admin' and not _other_active_admins(member):
        raise ValidationError('The last admin cannot leave the organization')
    member.delete()
    log_action(user=user, action='member_leave', object_type='organization', object_id=organization_id)
    publish_membership_change(user.pk, organization_id, 'left')
