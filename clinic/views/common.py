"""
Helpers shared by the API views.
"""
from __future__ import annotations

from rest_framework import serializers

MAX_PAGE_SIZE = 200


class PageQuerySerializer(serializers.Serializer):
    page = serializers.IntegerField(min_value=1, required=False)
    pageSize = serializers.IntegerField(min_value=1, max_value=MAX_PAGE_SIZE, required=False)


def paginate(request, qs):
    """Slice ``qs`` by the ``page``/``pageSize`` query parameters.

    Returns ``(rows, total)``; without ``pageSize`` every row is returned.
    """
    q = PageQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    page = q.validated_data.get('page') or 1
    page_size = q.validated_data.get('pageSize') or 0
    total = qs.count()
    if page_size:
        start = (page - 1) * page_size
        qs = qs[start:start + page_size]
    return qs, total


def truthy(value) -> bool:
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
