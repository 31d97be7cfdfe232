"""
Session, operating mode and permission endpoints.

The front end asks these on start-up and after every context switch to
decide which partition it is looking at and which actions to offer.
"""
from __future__ import annotations

from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from ..serializers.auth import UserSerializer
from ..serializers.organizations import SwitchModeSerializer
from ..services import context
from ..services.permissions import permissions_for_request


def _membership_dict(info: context.ModeInfo):
    m = info.active_membership
    if m is None:
        return None
    return {
        'id': m.id,
        'organizationId': m.organization_id,
        'role': m.role,
        'status': m.status,
        'permissions': m.permissions,
        'joinedAt': m.joined_at,
    }


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def session(request):
    """Current user, resolved mode and effective permissions."""
    info = context.mode_for_request(request)
    return Response({
        'ok': True,
        'user': UserSerializer(request.user).data,
        'mode': info.as_dict(),
        'permissions': permissions_for_request(request).as_dict(),
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def mode(request):
    info = context.mode_for_request(request)
    return Response({'ok': True, **info.as_dict()})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def switch_mode(request):
    s = SwitchModeSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    if s.validated_data['mode'] == context.INDIVIDUAL:
        info = context.switch_to_individual(request.user)
    else:
        info = context.switch_to_organization(request.user, s.validated_data.get('organization_id'))
    return Response({'ok': True, **info.as_dict()})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def permissions(request):
    info = context.mode_for_request(request)
    return Response({
        'ok': True,
        'mode': info.active_mode,
        'permissions': permissions_for_request(request).as_dict(),
        'membership': _membership_dict(info),
    })
