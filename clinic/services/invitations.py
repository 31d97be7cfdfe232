"""
Organization invitations.

An invitation starts ``pending`` and ends in exactly one of ``accepted``,
``declined`` or ``expired``; terminal states are never left.  Expiry is
decided at read time: a pending invitation past ``expires_at`` is marked
expired the first time anybody looks it up.
"""
from __future__ import annotations

import logging
from typing import Optional

from django.db import transaction
from django.utils import timezone

from clinic.exceptions import InvitationExpiredError, NotFoundError, ValidationError
from clinic.models import OrganizationInvitation, OrganizationMember, default_member_permissions
from clinic.services.audit import log_action
from clinic.services.events import publish_membership_change
from clinic.services.organizations import (
    MEMBER_ROLES,
    clean_permissions,
    get_organization,
    require_grantable,
    require_member_manager,
)

logger = logging.getLogger(__name__)

PENDING = 'pending'
TERMINAL_STATUSES = ('accepted', 'declined', 'expired')


def invite_user(actor, organization_id, email: str, role: str = 'member',
                permissions: Optional[dict] = None) -> OrganizationInvitation:
    require_member_manager(actor, organization_id)
    org = get_organization(organization_id)
    email = (email or '').strip().lower()
    if not email or '@' not in email:
        raise ValidationError('A valid email address is required')
    if role not in MEMBER_ROLES:
        raise ValidationError('Role must be admin or member')
    if OrganizationMember.objects.filter(organization=org, user__email__iexact=email).exists():
        raise ValidationError('This user is already a member of the organization')
    requested = clean_permissions(permissions)
    require_grantable(actor, org.pk, role, requested)
    bundle = default_member_permissions()
    bundle.update(requested)
    invitation = OrganizationInvitation.objects.create(
        organization=org, email=email, invited_by=actor, role=role, permissions=bundle,
    )
    log_action(user=actor, action='invitation_create', object_type='organization_invitation',
               object_id=invitation.pk, detail={'organization': org.pk, 'email': email, 'role': role})
    return invitation


def _expire_if_overdue(invitation: OrganizationInvitation) -> bool:
    if invitation.status == PENDING and invitation.is_overdue:
        invitation.status = 'expired'
        invitation.save(update_fields=['status'])
        logger.info('invitation %s expired', invitation.pk)
        return True
    return False


def _lookup(token: str, *, for_update: bool = False) -> OrganizationInvitation:
    qs = OrganizationInvitation.objects.select_related('organization', 'invited_by')
    if for_update:
        qs = qs.select_for_update()
    invitation = qs.filter(token=token).first() if token else None
    if invitation is None:
        raise NotFoundError('Invitation not found')
    return invitation


def get_invitation(token: str) -> OrganizationInvitation:
    """Look an invitation up by token, expiring it if it is overdue."""
    invitation = _lookup(token)
    if _expire_if_overdue(invitation) or invitation.status == 'expired':
        raise InvitationExpiredError()
    return invitation


def _require_pending(invitation: OrganizationInvitation) -> None:
    if invitation.status == 'expired':
        raise InvitationExpiredError()
    if invitation.status != PENDING:
        raise ValidationError(f'Invitation has already been {invitation.status}')


def accept_invitation(user, token: str) -> OrganizationMember:
    # expiry is written outside the accept transaction so it survives the raise
    invitation = _lookup(token)
    if _expire_if_overdue(invitation):
        raise InvitationExpiredError()
    with transaction.atomic():
        invitation = _lookup(token, for_update=True)
        _require_pending(invitation)
        if OrganizationMember.objects.filter(organization=invitation.organization, user=user).exists():
            raise ValidationError('You are already a member of this organization')
        member = OrganizationMember.objects.create(
            organization=invitation.organization,
            user=user,
            role=invitation.role,
            permissions=dict(invitation.permissions or default_member_permissions()),
            status='active',
            invited_by=invitation.invited_by,
            joined_at=timezone.now(),
        )
        invitation.status = 'accepted'
        invitation.save(update_fields=['status'])
    log_action(user=user, action='invitation_accept', object_type='organization_invitation',
               object_id=invitation.pk, detail={'organization': invitation.organization_id})
    publish_membership_change(user.pk, invitation.organization_id, 'joined')
    return member


def decline_invitation(token: str, actor=None) -> OrganizationInvitation:
    invitation = _lookup(token)
    if _expire_if_overdue(invitation):
        raise InvitationExpiredError()
    with transaction.atomic():
        invitation = _lookup(token, for_update=True)
        _require_pending(invitation)
        invitation.status = 'declined'
        invitation.save(update_fields=['status'])
    log_action(user=actor, action='invitation_decline', object_type='organization_invitation',
               object_id=invitation.pk, detail={'organization': invitation.organization_id})
    return invitation


def cancel_invitation(actor, organization_id, invitation_id) -> OrganizationInvitation:
    """An admin withdrawing a pending invitation; recorded as declined."""
    require_member_manager(actor, organization_id)
    invitation = OrganizationInvitation.objects.filter(
        organization_id=organization_id, pk=invitation_id
    ).first()
    if invitation is None:
        raise NotFoundError('Invitation not found')
    return decline_invitation(invitation.token, actor=actor)


def list_invitations(actor, organization_id, status: Optional[str] = None):
    require_member_manager(actor, organization_id)
    qs = OrganizationInvitation.objects.filter(organization_id=organization_id).select_related('invited_by')
    for invitation in qs.filter(status=PENDING, expires_at__lte=timezone.now()):
        _expire_if_overdue(invitation)
    if status:
        qs = qs.filter(status=status)
    return qs.order_by('-created_at', '-id')


def invitations_for_email(email: str):
    """Pending, unexpired invitations addressed to ``email``."""
    return OrganizationInvitation.objects.filter(
        email__iexact=email, status=PENDING, expires_at__gt=timezone.now()
    ).select_related('organization', 'invited_by')


def expire_overdue() -> int:
    return OrganizationInvitation.objects.filter(
        status=PENDING, expires_at__lte=timezone.now()
    ).update(status='expired')
