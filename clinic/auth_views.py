"""
Authentication views: sign-up, password sign-in, sign-out, email
verification and JWT refresh.

The views validate input and hand over to ``clinic.services.accounts``;
failures surface through the unified exception handler.
"""
from __future__ import annotations

from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework_simplejwt.views import TokenRefreshView

from clinic.serializers.auth import (
    ResendSerializer,
    SignInSerializer,
    SignOutSerializer,
    SignUpSerializer,
    UserSerializer,
    VerifyEmailSerializer,
)
from clinic.services import accounts, context
from clinic.services.permissions import permissions_for


@api_view(['POST'])
@permission_classes([AllowAny])
def sign_up_view(request):
    s = SignUpSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    vd = s.validated_data
    user = accounts.sign_up(vd['email'], vd['password'], {'full_name': vd.get('full_name', '')})
    return Response({
        'ok': True,
        'user': UserSerializer(user).data,
        'message': 'Check your email to confirm the account',
    }, status=201)

sign_up_view.cls.throttle_scope = 'login'


@api_view(['POST'])
@permission_classes([AllowAny])
def sign_in_view(request):
    s = SignInSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    user, tokens = accounts.sign_in_with_password(
        s.validated_data['email'], s.validated_data['password'], request=request
    )
    info = context.resolve_mode(user)
    return Response({
        'ok': True,
        **tokens,
        'user': UserSerializer(user).data,
        'mode': info.as_dict(),
        'permissions': permissions_for(user, info.scope).as_dict(),
    })

# ScopedRateThrottle reads throttle_scope from the generated view class
sign_in_view.cls.throttle_scope = 'login'


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def sign_out_view(request):
    s = SignOutSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    count = accounts.sign_out(request.user, s.validated_data.get('refresh') or None)
    return Response({'ok': True, 'blacklisted': count})


@api_view(['POST'])
@permission_classes([AllowAny])
def resend_view(request):
    s = ResendSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    accounts.resend(s.validated_data['type'], s.validated_data['email'])
    return Response({'ok': True})

resend_view.cls.throttle_scope = 'login'


@api_view(['POST', 'GET'])
@permission_classes([AllowAny])
def verify_email_view(request):
    s = VerifyEmailSerializer(data=request.data if request.method == 'POST' else request.query_params)
    s.is_valid(raise_exception=True)
    user = accounts.verify_email(s.validated_data['token'])
    return Response({'ok': True, 'user': UserSerializer(user).data})


@api_view(['POST'])
@permission_classes([AllowAny])
def jwt_refresh_view(request):
    """Return a new access token from a refresh token."""
    resp = TokenRefreshView.as_view()(request._request)
    data = dict(resp.data)
    if resp.status_code != 200:
        return Response({'ok': False, 'error': {'code': 'token_not_valid',
                                                 'message': data.get('detail', 'Token is invalid')}},
                        status=resp.status_code)
    out = {'ok': True, 'jwt_access': data.get('access')}
    if 'refresh' in data:
        out['jwt_refresh'] = data['refresh']
    return Response(out)
