"""
Active operating context (individual vs. organization) for a user.

A user always works either on their own records or on the records of
exactly one organization they actively belong to.  The choice is
persisted in :class:`clinic.models.ContextPreference` so later requests
resolve the same context without re-specifying it.  Concurrent switches
are not sequenced: the last write to the preference row wins.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from clinic.exceptions import MembershipSuspendedError, NotAMemberError
from clinic.models import ContextPreference, OrganizationMember

logger = logging.getLogger(__name__)

INDIVIDUAL = 'individual'
ORGANIZATION = 'organization'

STATUS_INDIVIDUAL = 'individual'
STATUS_ORGANIZATION_MEMBER = 'organization_member'
STATUS_MULTI_ORGANIZATION = 'multi_organization'


@dataclass(frozen=True)
class Scope:
    """The owner partition a request addresses.

    ``Scope.individual(user)`` addresses the user's own records,
    ``Scope.organization(user, org_id)`` the records of one organization.
    ``user_id`` is always the acting user.
    """
    mode: str
    user_id: int
    organization_id: Optional[int] = None

    @classmethod
    def individual(cls, user) -> 'Scope':
        return cls(INDIVIDUAL, user.pk)

    @classmethod
    def organization(cls, user, organization_id) -> 'Scope':
        return cls(ORGANIZATION, user.pk, organization_id)

    @property
    def is_organization(self) -> bool:
        return self.mode == ORGANIZATION

    def owner_filter(self) -> dict:
        """Queryset filter selecting the rows of this partition."""
        if self.is_organization:
            return {'organization_id': self.organization_id}
        return {'owner_user_id': self.user_id}

    def owner_values(self) -> dict:
        """Owner columns to stamp on a new row."""
        if self.is_organization:
            return {'organization_id': self.organization_id, 'owner_user_id': None}
        return {'owner_user_id': self.user_id, 'organization_id': None}


@dataclass
class ModeInfo:
    scope: Scope
    membership_status: str
    organizations: list[OrganizationMember] = field(default_factory=list)
    active_membership: Optional[OrganizationMember] = None

    @property
    def active_mode(self) -> str:
        return self.scope.mode

    @property
    def active_organization(self):
        return self.active_membership.organization if self.active_membership else None

    @property
    def can_switch_to_organization(self) -> bool:
        return bool(self.organizations)

    @property
    def can_switch_to_individual(self) -> bool:
        return True

    def as_dict(self) -> dict:
        org = self.active_organization
        return {
            'activeMode': self.active_mode,
            'membershipStatus': self.membership_status,
            'activeOrganization': {'id': org.id, 'name': org.name} if org else None,
            'activeRole': self.active_membership.role if self.active_membership else None,
            'organizations': [
                {
                    'id': m.organization_id,
                    'name': m.organization.name,
                    'role': m.role,
                    'joinedAt': m.joined_at,
                }
                for m in self.organizations
            ],
            'canSwitchToOrganization': self.can_switch_to_organization,
            'canSwitchToIndividual': self.can_switch_to_individual,
        }


def active_memberships(user) -> list[OrganizationMember]:
    """Active memberships of ``user``, most recently joined first."""
    return list(
        OrganizationMember.objects.filter(user=user, status='active')
        .select_related('organization')
        .order_by('-joined_at', '-id')
    )


def membership_status_for(count: int) -> str:
    if count == 0:
        return STATUS_INDIVIDUAL
    if count == 1:
        return STATUS_ORGANIZATION_MEMBER
    return STATUS_MULTI_ORGANIZATION


def _store(user, mode: str, organization_id) -> None:
    ContextPreference.objects.update_or_create(
        user=user,
        defaults={'active_mode': mode, 'active_organization_id': organization_id},
    )


def _stored(user) -> tuple[str, Optional[int]]:
    pref = ContextPreference.objects.filter(user=user).first()
    if pref is None:
        return INDIVIDUAL, None
    return pref.active_mode, pref.active_organization_id


def resolve_mode(user) -> ModeInfo:
    """Resolve the persisted context of ``user`` against current memberships.

    A stored organization the user is no longer active in falls back to
    the most recent active membership, and to individual mode when none
    is left.  Fallbacks are written back.
    """
    memberships = active_memberships(user)
    stored_mode, stored_org = _stored(user)

    membership = None
    if stored_mode == ORGANIZATION:
        membership = next((m for m in memberships if m.organization_id == stored_org), None)
        if membership is None and memberships:
            membership = memberships[0]

    if membership is not None:
        scope = Scope.organization(user, membership.organization_id)
    else:
        scope = Scope.individual(user)

    if (stored_mode, stored_org) != (scope.mode, scope.organization_id):
        if stored_mode == ORGANIZATION:
            logger.info('context of user %s fell back from organization %s to %s %s',
                        user.pk, stored_org, scope.mode, scope.organization_id or '')
        _store(user, scope.mode, scope.organization_id)

    return ModeInfo(
        scope=scope,
        membership_status=membership_status_for(len(memberships)),
        organizations=memberships,
        active_membership=membership,
    )


def switch_to_individual(user) -> ModeInfo:
    """Switch to individual mode.  Memberships are left untouched."""
    if _stored(user) != (INDIVIDUAL, None):
        _store(user, INDIVIDUAL, None)
        logger.info('user %s switched to individual mode', user.pk)
    return resolve_mode(user)


def switch_to_organization(user, organization_id=None) -> ModeInfo:
    """Switch to organization mode.

    Without ``organization_id`` the currently stored organization is kept
    when still active, otherwise the most recent active membership is
    used.  A failed switch raises before anything is written.
    """
    if organization_id is None:
        memberships = active_memberships(user)
        if not memberships:
            raise NotAMemberError('You are not a member of any organization')
        stored_mode, stored_org = _stored(user)
        membership = next((m for m in memberships if m.organization_id == stored_org), memberships[0])
    else:
        membership = (
            OrganizationMember.objects.select_related('organization')
            .filter(user=user, organization_id=organization_id)
            .first()
        )
        if membership is None:
            raise NotAMemberError()
        if membership.status != 'active':
            raise MembershipSuspendedError()

    if _stored(user) != (ORGANIZATION, membership.organization_id):
        _store(user, ORGANIZATION, membership.organization_id)
        logger.info('user %s switched to organization %s', user.pk, membership.organization_id)
    return resolve_mode(user)


def mode_for_request(request) -> ModeInfo:
    """Resolve (once per request) the mode info of the authenticated user."""
    info = getattr(request, '_clinic_mode_info', None)
    if info is None:
        info = resolve_mode(request.user)
        request._clinic_mode_info = info
    return info


def current_scope(request) -> Scope:
    return mode_for_request(request).scope
