"""
Drug inventory, dispensing and write-off endpoints.
"""
from __future__ import annotations

from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from ..permissions import HasContextPermission
from ..serializers.drugs import (
    DispenseSerializer,
    DrugImportSerializer,
    DrugCategorySerializer,
    DrugSerializer,
    DrugUsageSerializer,
    DrugWriteSerializer,
    StockAdjustSerializer,
    UsageQuerySerializer,
    UsageSerializer,
    WriteOffSerializer,
)
from ..services import inventory
from ..services.context import current_scope
from .common import paginate, truthy


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def drugs(request):
    scope = current_scope(request)
    if request.method == 'POST':
        s = DrugWriteSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        drug = inventory.create_drug(scope, request.user, s.validated_data)
        return Response({'ok': True, 'drug': DrugSerializer(drug).data}, status=201)

    term = (request.query_params.get('q') or '').strip()
    if term:
        qs = inventory.search_drugs(scope, term)
    else:
        qs = inventory.list_drugs(scope, include_inactive=truthy(request.query_params.get('includeInactive')))
    rows, total = paginate(request, qs)
    return Response({'ok': True, 'total': total, 'drugs': DrugSerializer(rows, many=True).data})


@api_view(['GET', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def drug_detail(request, pk: int):
    scope = current_scope(request)
    if request.method == 'PATCH':
        s = DrugWriteSerializer(data=request.data, partial=True)
        s.is_valid(raise_exception=True)
        drug = inventory.update_drug(scope, request.user, pk, s.validated_data)
        return Response({'ok': True, 'drug': DrugSerializer(drug).data})
    if request.method == 'DELETE':
        inventory.delete_drug(scope, request.user, pk)
        return Response({'ok': True})
    return Response({'ok': True, 'drug': DrugSerializer(inventory.get_drug(scope, pk)).data})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def drug_stock(request, pk: int):
    s = StockAdjustSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    drug = inventory.adjust_stock(current_scope(request), request.user, pk, s.validated_data['change'])
    return Response({'ok': True, 'drug': DrugSerializer(drug).data})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def drug_usage(request, pk: int):
    """Dispense units of one drug."""
    s = UsageSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    vd = s.validated_data
    entry = inventory.record_usage(
        current_scope(request), request.user, pk, vd['quantity'],
        diagnosis_id=vd.get('diagnosis_id'), note=vd.get('note'), patient_info=vd.get('patient_info'),
    )
    return Response({'ok': True, 'usage': DrugUsageSerializer(entry).data}, status=201)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def drug_write_off(request, pk: int):
    s = WriteOffSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    vd = s.validated_data
    entry = inventory.write_off(current_scope(request), request.user, pk, vd['quantity'], vd['reason'],
                                note=vd.get('note'))
    return Response({'ok': True, 'usage': DrugUsageSerializer(entry).data}, status=201)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def low_stock(request):
    threshold = request.query_params.get('threshold')
    qs = inventory.low_stock(current_scope(request), int(threshold) if threshold and threshold.isdigit() else None)
    return Response({'ok': True, 'drugs': DrugSerializer(qs, many=True).data})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def expired(request):
    qs = inventory.expired_drugs(current_scope(request))
    return Response({'ok': True, 'drugs': DrugSerializer(qs, many=True).data})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def categories(request):
    return Response({'ok': True, 'categories': DrugCategorySerializer(inventory.list_categories(), many=True).data})


@api_view(['GET'])
@permission_classes([IsAuthenticated, HasContextPermission('view_reports')])
def usage_history(request):
    q = UsageQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    qs = inventory.usage_history(current_scope(request), request.user, **q.validated_data)
    rows, total = paginate(request, qs)
    return Response({'ok': True, 'total': total, 'usage': DrugUsageSerializer(rows, many=True).data})


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def diagnosis_dispense(request, pk: int):
    """Dispensing entries of a diagnosis; POST dispenses several drugs at once."""
    scope = current_scope(request)
    if request.method == 'POST':
        s = DispenseSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        vd = s.validated_data
        entries = inventory.dispense_for_diagnosis(
            scope, request.user, pk, vd['items'],
            patient_info=vd.get('patient_info'), skip_duplicate_check=vd['skip_duplicate_check'],
        )
        return Response({'ok': True, 'usage': DrugUsageSerializer(entries, many=True).data}, status=201)
    rows = inventory.diagnosis_dispensing(scope, pk)
    return Response({'ok': True, 'usage': DrugUsageSerializer(rows, many=True).data})


@api_view(['POST'])
@permission_classes([IsAuthenticated, HasContextPermission('manage_inventory')])
def drug_import(request):
    s = DrugImportSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    result = inventory.import_drugs(current_scope(request), request.user, s.validated_data['drugs'])
    return Response({'ok': True, **result}, status=201 if result['imported'] else 200)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def undispensed(request):
    patient_id = request.query_params.get('patientId') or ''
    result = inventory.undispensed_medications(current_scope(request),
                                               int(patient_id) if patient_id.isdigit() else None)
    return Response({'ok': True, **result})
