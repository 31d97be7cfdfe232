"""
Diagnosis endpoints: AI-assisted intake, manual edits, drug suggestions
and the raw webhook proxy.
"""
from __future__ import annotations

from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from ..permissions import HasContextPermission, IsVerified
from ..serializers.diagnosis import (
    DiagnosisDrugSuggestionSerializer,
    DiagnosisEditSerializer,
    DiagnosisIntakeSerializer,
    DiagnosisQuerySerializer,
    DiagnosisSerializer,
    DrugSuggestionWriteSerializer,
)
from ..services import diagnosis as diagnosis_service
from ..services import patients as patient_service
from ..services import webhook
from ..services.context import current_scope
from .common import paginate


def _intake(scope, validated: dict) -> dict:
    data = dict(validated)
    patient_ref = data.pop('patient_ref', None)
    if patient_ref:
        data['patient'] = patient_service.get_patient(scope, patient_ref)
    return data


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def diagnoses(request):
    scope = current_scope(request)
    if request.method == 'POST':
        s = DiagnosisIntakeSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        record = diagnosis_service.submit_diagnosis(scope, request.user, _intake(scope, s.validated_data))
        return Response({'ok': True, 'diagnosis': DiagnosisSerializer(record).data}, status=201)

    q = DiagnosisQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    qs = diagnosis_service.list_diagnoses(
        scope,
        patient_id=q.validated_data.get('patient_id'),
        severity=q.validated_data.get('severity'),
        term=q.validated_data.get('q'),
    )
    rows, total = paginate(request, qs)
    return Response({'ok': True, 'total': total, 'diagnoses': DiagnosisSerializer(rows, many=True).data})


@api_view(['GET', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def diagnosis_detail(request, pk: int):
    scope = current_scope(request)
    if request.method == 'PATCH':
        s = DiagnosisEditSerializer(data=request.data, partial=True)
        s.is_valid(raise_exception=True)
        changes = dict(s.validated_data)
        changes.pop('patient_ref', None)
        location = changes.pop('edit_location', None)
        record = diagnosis_service.update_diagnosis(scope, request.user, pk, changes, edit_location=location)
        return Response({'ok': True, 'diagnosis': DiagnosisSerializer(record).data})
    if request.method == 'DELETE':
        diagnosis_service.delete_diagnosis(scope, request.user, pk)
        return Response({'ok': True})

    record = diagnosis_service.get_diagnosis(scope, pk)
    suggestions = diagnosis_service.list_drug_suggestions(scope, pk)
    return Response({
        'ok': True,
        'diagnosis': DiagnosisSerializer(record).data,
        'suggestions': DiagnosisDrugSuggestionSerializer(suggestions, many=True).data,
    })


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def drug_suggestions(request, pk: int):
    scope = current_scope(request)
    if request.method == 'POST':
        s = DrugSuggestionWriteSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        suggestion = diagnosis_service.add_drug_suggestion(scope, request.user, pk, **s.validated_data)
        return Response({'ok': True, 'suggestion': DiagnosisDrugSuggestionSerializer(suggestion).data}, status=201)
    rows = diagnosis_service.list_drug_suggestions(scope, pk)
    return Response({'ok': True, 'suggestions': DiagnosisDrugSuggestionSerializer(rows, many=True).data})


@api_view(['DELETE'])
@permission_classes([IsAuthenticated])
def drug_suggestion_delete(request, pk: int, suggestion_id: int):
    diagnosis_service.remove_drug_suggestion(current_scope(request), request.user, pk, suggestion_id)
    return Response({'ok': True})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsVerified, HasContextPermission('diagnose_patients')])
def diagnosis_proxy(request):
    """Forward a payload to the diagnosis workflow and return its answer untouched."""
    return Response({'ok': True, 'result': webhook.proxy(request.data)})
