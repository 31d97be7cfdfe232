"""
Organization, member and invitation endpoints.

Membership changes take effect on the affected user's next request: the
mode resolver re-reads memberships every time, so a removed or
suspended member falls back to another context automatically.
"""
from __future__ import annotations

from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response

from ..serializers.organizations import (
    InvitationSerializer,
    InviteSerializer,
    MemberRoleSerializer,
    MemberSerializer,
    MemberStatusSerializer,
    OrganizationUpdateSerializer,
    OrganizationWriteSerializer,
    PermissionFlagsSerializer,
)
from ..services import invitations, organizations


def _organization_dict(org, membership=None) -> dict:
    data = {
        'id': org.id,
        'name': org.name,
        'description': org.description,
        'settings': org.settings,
        'createdBy': org.created_by_id,
        'createdAt': org.created_at,
        'updatedAt': org.updated_at,
    }
    if membership is not None:
        data.update({'role': membership.role, 'status': membership.status, 'joinedAt': membership.joined_at})
    return data


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def organization_list(request):
    """GET: organizations the caller belongs to.  POST: create one."""
    if request.method == 'POST':
        s = OrganizationWriteSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        vd = s.validated_data
        org = organizations.create_organization(request.user, vd['name'], vd.get('description', ''),
                                                vd.get('settings'))
        return Response({'ok': True, 'organization': _organization_dict(org)}, status=201)
    rows = organizations.organizations_for(request.user)
    return Response({'ok': True, 'organizations': [_organization_dict(m.organization, m) for m in rows]})


@api_view(['GET', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def organization_detail(request, pk: int):
    if request.method == 'PATCH':
        s = OrganizationUpdateSerializer(data=request.data, partial=True)
        s.is_valid(raise_exception=True)
        org = organizations.update_organization(request.user, pk, **s.validated_data)
        return Response({'ok': True, 'organization': _organization_dict(org)})
    if request.method == 'DELETE':
        organizations.delete_organization(request.user, pk)
        return Response({'ok': True})
    organizations.require_active_member(request.user, pk)
    return Response({'ok': True, 'organization': _organization_dict(organizations.get_organization(pk))})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def organization_stats(request, pk: int):
    return Response({'ok': True, **organizations.organization_stats(request.user, pk)})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def members(request, pk: int):
    rows = organizations.list_members(request.user, pk)
    return Response({'ok': True, 'members': MemberSerializer(rows, many=True).data})


@api_view(['PATCH'])
@permission_classes([IsAuthenticated])
def member_permissions(request, pk: int, member_id: int):
    s = PermissionFlagsSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    member = organizations.update_member_permissions(request.user, pk, member_id, s.validated_data)
    return Response({'ok': True, 'member': MemberSerializer(member).data})


@api_view(['PATCH'])
@permission_classes([IsAuthenticated])
def member_role(request, pk: int, member_id: int):
    s = MemberRoleSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    member = organizations.update_member_role(request.user, pk, member_id, s.validated_data['role'])
    return Response({'ok': True, 'member': MemberSerializer(member).data})


@api_view(['PATCH'])
@permission_classes([IsAuthenticated])
def member_status(request, pk: int, member_id: int):
    s = MemberStatusSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    member = organizations.update_member_status(request.user, pk, member_id, s.validated_data['status'])
    return Response({'ok': True, 'member': MemberSerializer(member).data})


@api_view(['DELETE'])
@permission_classes([IsAuthenticated])
def member_remove(request, pk: int, member_id: int):
    organizations.remove_member(request.user, pk, member_id)
    return Response({'ok': True})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def leave(request, pk: int):
    organizations.leave_organization(request.user, pk)
    return Response({'ok': True})


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def organization_invitations(request, pk: int):
    if request.method == 'POST':
        s = InviteSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        vd = s.validated_data
        invitation = invitations.invite_user(request.user, pk, vd['email'], vd['role'], vd.get('permissions'))
        return Response({'ok': True, 'invitation': InvitationSerializer(invitation).data}, status=201)
    rows = invitations.list_invitations(request.user, pk, request.query_params.get('status'))
    return Response({'ok': True, 'invitations': InvitationSerializer(rows, many=True).data})


@api_view(['DELETE'])
@permission_classes([IsAuthenticated])
def invitation_cancel(request, pk: int, invitation_id: int):
    invitations.cancel_invitation(request.user, pk, invitation_id)
    return Response({'ok': True})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def my_invitations(request):
    rows = invitations.invitations_for_email(request.user.email)
    return Response({'ok': True, 'invitations': InvitationSerializer(rows, many=True).data})


@api_view(['GET'])
@permission_classes([AllowAny])
def invitation_detail(request, token: str):
    """Public lookup used by the invitation link before signing in."""
    invitation = invitations.get_invitation(token)
    return Response({'ok': True, 'invitation': {
        'organization': {'id': invitation.organization_id, 'name': invitation.organization.name},
        'email': invitation.email,
        'role': invitation.role,
        'invitedBy': invitation.invited_by.display_name(),
        'expiresAt': invitation.expires_at,
        'status': invitation.status,
    }})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def invitation_accept(request, token: str):
    member = invitations.accept_invitation(request.user, token)
    return Response({'ok': True, 'member': MemberSerializer(member).data})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def invitation_decline(request, token: str):
    invitations.decline_invitation(token, actor=request.user)
    return Response({'ok': True})
