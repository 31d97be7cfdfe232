"""
Patient endpoints.  Every query is limited to the caller's active context.
"""
from __future__ import annotations

from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from ..permissions import HasContextPermission
from ..serializers.diagnosis import DiagnosisSerializer
from ..serializers.patients import (
    PatientDeleteSerializer,
    PatientQuerySerializer,
    PatientSerializer,
    PatientWriteSerializer,
)
from ..services import patients as patient_service
from ..services.context import current_scope
from .common import paginate


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def patients(request):
    scope = current_scope(request)
    if request.method == 'POST':
        s = PatientWriteSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        patient = patient_service.create_patient(scope, request.user, s.validated_data)
        return Response({'ok': True, 'patient': PatientSerializer(patient).data}, status=201)

    q = PatientQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    term = q.validated_data.get('q')
    qs = patient_service.search_patients(scope, term) if term else patient_service.list_patients(scope)
    rows, total = paginate(request, qs)
    return Response({'ok': True, 'total': total, 'patients': PatientSerializer(rows, many=True).data})


@api_view(['GET', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def patient_detail(request, pk: int):
    scope = current_scope(request)
    if request.method == 'PATCH':
        s = PatientWriteSerializer(data=request.data, partial=True)
        s.is_valid(raise_exception=True)
        patient = patient_service.update_patient(scope, request.user, pk, s.validated_data)
        return Response({'ok': True, 'patient': PatientSerializer(patient).data})
    if request.method == 'DELETE':
        data = request.data if request.data else request.query_params
        PatientDeleteSerializer(data=data).is_valid(raise_exception=True)
        patient_service.delete_patient(scope, request.user, pk)
        return Response({'ok': True})

    patient = patient_service.get_patient(scope, pk)
    diagnoses = patient_service.patient_diagnoses(scope, patient)
    return Response({
        'ok': True,
        'patient': PatientSerializer(patient).data,
        'diagnoses': DiagnosisSerializer(diagnoses, many=True).data,
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated, HasContextPermission('diagnose_patients', 'view patient history')])
def patient_history(request, pk: int):
    """Diagnoses of one patient, newest first."""
    scope = current_scope(request)
    patient = patient_service.get_patient(scope, pk)
    rows, total = paginate(request, patient_service.patient_diagnoses(scope, patient).order_by('-created_at'))
    return Response({'ok': True, 'total': total, 'diagnoses': DiagnosisSerializer(rows, many=True).data})
