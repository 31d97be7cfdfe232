"""
Dashboard endpoints.  Figures cover the active context only.
"""
from __future__ import annotations

from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from ..services.context import current_scope
from ..services.dashboard import dashboard_stats, recent_activity


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def dashboard(request):
    return Response({'ok': True, **dashboard_stats(current_scope(request), request.user)})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def activity(request):
    limit = request.query_params.get('limit') or ''
    limit = min(int(limit), 50) if limit.isdigit() and int(limit) > 0 else 10
    return Response({'ok': True, 'items': recent_activity(current_scope(request), limit)})
