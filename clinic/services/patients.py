from __future__ import annotations

from typing import Optional

from django.db.models import Count, OuterRef, Q, Subquery
from django.utils import timezone

from clinic.models import Diagnosis, Patient
from clinic.services import scoping
from clinic.services.audit import log_action
from clinic.services.permissions import ensure_permission


def _enriched(qs):
    latest = Diagnosis.objects.filter(patient=OuterRef('pk')).order_by('-created_at', '-id')
    return qs.annotate(
        diagnosis_count=Count('diagnoses', distinct=True),
        last_diagnosis_at=Subquery(latest.values('created_at')[:1]),
        last_diagnosis_primary=Subquery(latest.values('primary_diagnosis')[:1]),
        last_diagnosis_severity=Subquery(latest.values('severity_level')[:1]),
    )


def list_patients(scope):
    """Patients of the active context, newest first, with diagnosis summary columns."""
    return _enriched(scoping.list_records('patients', scope, order_by=('-created_at', '-id')))


def search_patients(scope, term: Optional[str]):
    """Every word of ``term`` must match the name, surname or external id."""
    qs = scoping.list_records('patients', scope)
    for word in (term or '').split():
        qs = qs.filter(
            Q(patient_name__icontains=word)
            | Q(patient_surname__icontains=word)
            | Q(external_id__icontains=word)
        )
    return _enriched(qs.order_by('patient_name', 'patient_surname', 'id'))


def get_patient(scope, pk) -> Patient:
    return scoping.get_record('patients', scope, pk)


def patient_diagnoses(scope, patient: Patient):
    return scoping.list_records('diagnoses', scope, filters={'patient': patient})


def create_patient(scope, actor, data: dict) -> Patient:
    ensure_permission(actor, scope, 'diagnose_patients', 'add patients')
    patient = scoping.create_record('patients', scope, data, actor=actor)
    log_action(user=actor, action='patient_create', object_type='patient', object_id=patient.pk,
               detail={'mode': scope.mode, 'organization': scope.organization_id})
    return patient


def update_patient(scope, actor, pk, changes: dict) -> Patient:
    ensure_permission(actor, scope, 'diagnose_patients', 'edit patients')
    patient = scoping.update_record('patients', scope, pk, changes, actor=actor)
    log_action(user=actor, action='patient_update', object_type='patient', object_id=patient.pk,
               detail={'fields': sorted(changes)})
    return patient


def delete_patient(scope, actor, pk) -> None:
    """Hard delete.  Diagnoses of the patient stay, unlinked."""
    ensure_permission(actor, scope, 'diagnose_patients', 'delete patients')
    patient = scoping.get_record('patients', scope, pk)
    name = patient.full_name
    scoping.delete_record('patients', scope, pk)
    log_action(user=actor, action='patient_delete', object_type='patient', object_id=pk,
               detail={'name': name, 'mode': scope.mode, 'organization': scope.organization_id})


def find_matching_patient(scope, diagnosis: Diagnosis) -> Optional[Patient]:
    """Locate the patient a diagnosis intake refers to.

    Tries the external patient id first, then name with date of birth,
    then name with surname.
    """
    qs = scoping.scoped_queryset('patients', scope)
    if diagnosis.patient_id:
        match = qs.filter(pk=diagnosis.patient_id).first()
        if match:
            return match
    external_id = (diagnosis.external_id or '').strip()
    if external_id:
        match = qs.filter(external_id=external_id).first()
        if match:
            return match
    name = (diagnosis.patient_name or '').strip()
    if not name:
        return None
    by_name = qs.filter(patient_name__iexact=name)
    if diagnosis.date_of_birth:
        match = by_name.filter(date_of_birth=diagnosis.date_of_birth).first()
        if match:
            return match
    surname = (diagnosis.patient_surname or '').strip()
    return by_name.filter(patient_surname__iexact=surname).first()


def save_patient_from_diagnosis(scope, actor, diagnosis: Diagnosis) -> Optional[Patient]:
    """Create or refresh the patient record behind ``diagnosis`` and link both ways."""
    if not (diagnosis.patient_name or '').strip():
        return None
    now = timezone.now()
    fields = {
        'patient_age': diagnosis.patient_age,
        'patient_gender': diagnosis.patient_gender or '',
        'last_diagnosis': diagnosis,
        'last_visit_date': now,
    }
    patient = find_matching_patient(scope, diagnosis)
    if patient is None:
        patient = scoping.create_record('patients', scope, {
            'patient_name': diagnosis.patient_name.strip(),
            'patient_surname': (diagnosis.patient_surname or '').strip(),
            'external_id': (diagnosis.external_id or '').strip(),
            'date_of_birth': diagnosis.date_of_birth,
            **fields,
        }, actor=actor)
    else:
        changes = {k: v for k, v in fields.items() if v not in (None, '')}
        patient = scoping.update_record('patients', scope, patient.pk, changes, actor=actor)
    if diagnosis.patient_id != patient.pk:
        diagnosis.patient = patient
        diagnosis.save(update_fields=['patient', 'updated_at'])
    return patient
