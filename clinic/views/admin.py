"""
System administration endpoints (global roles).  Admin and super_admin only.
"""
from __future__ import annotations

from rest_framework import serializers
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from ..models import User
from ..permissions import IsGlobalAdmin
from ..serializers.auth import UserSerializer
from ..serializers.fields import CleanCharField
from ..services import admin_roles, credits
from .common import paginate, truthy


class RoleChangeSerializer(serializers.Serializer):
    role = serializers.ChoiceField(choices=[c for c, _ in User.ROLE_CHOICES])
    reason = CleanCharField(required=False, allow_blank=True)


class CreditGrantSerializer(serializers.Serializer):
    amount = serializers.IntegerField(min_value=1)
    description = CleanCharField(required=False, allow_blank=True)


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsGlobalAdmin])
def users(request):
    qs = admin_roles.list_users(request.user, role=request.query_params.get('role'),
                                term=request.query_params.get('q'))
    rows, total = paginate(request, qs)
    return Response({'ok': True, 'total': total, 'users': UserSerializer(rows, many=True).data})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsGlobalAdmin])
def user_role(request, pk: int):
    s = RoleChangeSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    user = admin_roles.change_user_role(request.user, pk, s.validated_data['role'],
                                        s.validated_data.get('reason', ''))
    return Response({'ok': True, 'user': UserSerializer(user).data})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsGlobalAdmin])
def user_active(request, pk: int):
    user = admin_roles.set_user_active(request.user, pk, truthy(request.data.get('active')))
    return Response({'ok': True, 'user': UserSerializer(user).data})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsGlobalAdmin])
def role_history(request):
    user_id = request.query_params.get('userId')
    qs = admin_roles.role_history(request.user, int(user_id) if user_id and user_id.isdigit() else None)
    rows, total = paginate(request, qs)
    return Response({'ok': True, 'total': total, 'history': [
        {
            'id': h.id,
            'userId': h.user_id,
            'email': h.user.email,
            'changedBy': h.changed_by.email if h.changed_by else None,
            'oldRole': h.old_role,
            'newRole': h.new_role,
            'reason': h.reason,
            'createdAt': h.created_at,
        }
        for h in rows
    ]})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsGlobalAdmin])
def stats(request):
    return Response({'ok': True, **admin_roles.system_stats(request.user)})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsGlobalAdmin])
def user_credits(request, pk: int):
    s = CreditGrantSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    balance = credits.grant_credits(request.user, pk, s.validated_data['amount'],
                                    s.validated_data.get('description', ''))
    return Response({'ok': True, 'userId': pk, 'credits': balance.credits, 'freeCredits': balance.free_credits})
