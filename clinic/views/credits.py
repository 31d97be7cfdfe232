"""
Diagnosis credit balance and history of the signed-in user.
"""
from __future__ import annotations

from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from ..services import credits


def transaction_dict(t) -> dict:
    return {
        'id': t.id,
        'type': t.type,
        'amount': t.amount,
        'description': t.description,
        'grantedBy': t.admin.email if t.admin else None,
        'createdAt': t.created_at,
    }


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def balance(request):
    """Whether a diagnosis may be run now, plus the raw balance."""
    status = credits.can_use_diagnosis(request.user)
    body = {'ok': True, **status.as_dict()}
    if not status.is_admin:
        b = credits.credits_for(request.user)
        body.update({'totalUsed': b.total_used, 'dailyUsage': b.daily_usage,
                     'dailyLimit': credits.daily_limit(), 'lastUsedAt': b.last_used_at})
    return Response(body)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def transactions(request):
    rows = credits.list_transactions(request.user)
    return Response({'ok': True, 'transactions': [transaction_dict(t) for t in rows]})
