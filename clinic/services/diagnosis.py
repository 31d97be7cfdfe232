"""
Diagnosis records: intake, AI result, manual edits and drug suggestions.
"""
from __future__ import annotations

import logging
import re
from typing import Optional

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from clinic.exceptions import ExternalServiceError, NotFoundError, ValidationError
from clinic.models import Diagnosis, DiagnosisDrugSuggestion
from clinic.services import credits, inventory, scoping, webhook
from clinic.services.audit import log_action
from clinic.services.events import publish_refresh
from clinic.services.patients import save_patient_from_diagnosis
from clinic.services.permissions import ensure_permission

logger = logging.getLogger(__name__)

DEFAULT_EDIT_LOCATION = 'Patient Details Page'

# Fields a clinician may correct after the AI result came back
EDITABLE_FIELDS = (
    'complaint', 'primary_diagnosis', 'differential_diagnoses', 'recommended_actions',
    'treatment', 'improved_patient_history', 'symptoms',
    'patient_age', 'patient_gender', 'patient_name', 'patient_surname', 'external_id',
    'date_of_birth', 'weight', 'height',
    'blood_pressure_systolic', 'blood_pressure_diastolic', 'heart_rate', 'temperature',
    'respiratory_rate', 'oxygen_saturation', 'complaint_duration', 'pain_scale',
    'symptom_onset', 'allergies', 'current_medications', 'chronic_conditions',
    'previous_surgeries', 'previous_injuries', 'associated_symptoms', 'severity_level',
)

OPTIONAL_PAYLOAD_FIELDS = (
    'patient_name', 'patient_surname', 'external_id', 'date_of_birth',
    'allergies', 'current_medications', 'chronic_conditions', 'previous_surgeries', 'previous_injuries',
    'blood_pressure_systolic', 'blood_pressure_diastolic', 'heart_rate', 'temperature',
    'respiratory_rate', 'oxygen_saturation', 'weight', 'height',
    'complaint_duration', 'symptom_onset', 'associated_symptoms',
)

_LATVIAN = re.compile('[āēīōūģķļņšž]')
_CYRILLIC = re.compile('[а-яё]')
LATVIAN_WORDS = ('sāp', 'klepu', 'drudzis', 'galva', 'kuņģ', 'rīkle', 'vēders', 'mugura', 'sirds')
GERMAN_WORDS = ('schmerzen', 'fieber', 'husten', 'kopf', 'bauch', 'brust', 'rücken', 'herz')


def detect_language(text: str) -> str:
    lower = (text or '').lower()
    if _LATVIAN.search(lower) or any(w in lower for w in LATVIAN_WORDS):
        return 'latvian'
    if _CYRILLIC.search(lower):
        return 'russian'
    if any(w in lower for w in GERMAN_WORDS):
        return 'german'
    return 'english'


def _check_pain_scale(value) -> None:
    if value is None:
        return
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= 10:
        raise ValidationError('Pain scale must be a whole number between 0 and 10')


def list_diagnoses(scope, *, patient_id=None, severity: Optional[str] = None, term: Optional[str] = None):
    qs = scoping.list_records('diagnoses', scope).select_related('patient')
    if patient_id:
        qs = qs.filter(patient_id=patient_id)
    if severity:
        qs = qs.filter(severity_level=severity)
    for word in (term or '').split():
        qs = qs.filter(
            Q(patient_name__icontains=word)
            | Q(patient_surname__icontains=word)
            | Q(primary_diagnosis__icontains=word)
            | Q(complaint__icontains=word)
        )
    return qs.order_by('-created_at', '-id')


def get_diagnosis(scope, pk) -> Diagnosis:
    return scoping.get_record('diagnoses', scope, pk)


def create_diagnosis(scope, actor, intake: dict) -> Diagnosis:
    ensure_permission(actor, scope, 'diagnose_patients')
    if not (intake.get('complaint') or '').strip():
        raise ValidationError('Complaint is required')
    _check_pain_scale(intake.get('pain_scale'))
    diagnosis = scoping.create_record('diagnoses', scope, intake, actor=actor)
    log_action(user=actor, action='diagnosis_create', object_type='diagnosis', object_id=diagnosis.pk,
               detail={'mode': scope.mode, 'organization': scope.organization_id})
    return diagnosis


def _inventory_line(drug) -> str:
    line = f"Drug: {drug.drug_name}"
    if drug.generic_name:
        line += f" ({drug.generic_name})"
    line += (f", Form: {drug.dosage_form or 'N/A'}, Strength: {drug.strength or 'N/A'}"
             f", Stock: {drug.stock_quantity}, Category: {drug.category.name if drug.category else 'Uncategorized'}")
    if drug.dosage_adults:
        line += f", Adult Dosage: {drug.dosage_adults}"
    return line


def build_webhook_payload(scope, diagnosis: Diagnosis) -> dict:
    """Intake fields plus the relevant in-stock inventory, as the workflow expects them."""
    symptoms = ', '.join(str(s) for s in diagnosis.symptoms or [])
    text = f"{diagnosis.complaint} {symptoms}"
    drugs = inventory.relevant_drugs(scope, text)
    drug_inventory = '\n'.join(_inventory_line(d) for d in drugs) or None
    payload = {
        'diagnosis_id': diagnosis.pk,
        'complaint': diagnosis.complaint,
        'age': diagnosis.patient_age,
        'gender': diagnosis.patient_gender,
        'symptoms': list(diagnosis.symptoms) if diagnosis.symptoms else None,
        'timestamp': timezone.now().isoformat(),
        'detected_language': detect_language(text),
        'current_mode': scope.mode,
        'user_drug_inventory': drug_inventory,
        'has_drug_inventory': bool(drug_inventory),
        'request_comprehensive_therapy': True,
        'minimum_additional_therapy_count': 5,
        'include_alternative_treatments': True,
        'include_otc_medications': True,
    }
    for name in OPTIONAL_PAYLOAD_FIELDS:
        value = getattr(diagnosis, name)
        if value not in (None, ''):
            payload[name] = str(value) if name in ('date_of_birth', 'temperature', 'weight') else value
    if diagnosis.pain_scale is not None:
        payload['pain_scale'] = diagnosis.pain_scale
    return payload


def attach_result(scope, actor, pk, result: webhook.DiagnosisResult, raw) -> Diagnosis:
    fields = result.as_fields()
    fields['webhook_response'] = raw
    return scoping.update_record('diagnoses', scope, pk, fields)


def _store_inventory_suggestions(scope, actor, diagnosis: Diagnosis, result: webhook.DiagnosisResult) -> None:
    """Link AI picks that name a drug of this inventory."""
    stock = {d.drug_name.lower(): d for d in inventory.list_drugs(scope)}
    for index, item in enumerate(result.inventory_drugs, start=1):
        if isinstance(item, str):
            item = {'drug_name': item}
        if not isinstance(item, dict):
            continue
        name = str(item.get('drug_name') or item.get('name') or '').strip()
        drug = stock.get(name.lower())
        if drug is None:
            continue
        DiagnosisDrugSuggestion.objects.create(
            diagnosis=diagnosis, drug=drug, drug_name=drug.drug_name,
            suggested_dosage=str(item.get('dosage') or item.get('suggested_dosage') or ''),
            treatment_duration=str(item.get('duration') or item.get('treatment_duration') or ''),
            administration_notes=str(item.get('notes') or item.get('administration_notes') or ''),
            priority_level=index, suggested_by_ai=True, manual_selection=False, created_by=actor,
        )


def submit_diagnosis(scope, actor, intake: dict) -> Diagnosis:
    """Create the record, ask the workflow, store its answer and link the patient.

    One credit is charged together with the intake record.  When the
    workflow fails the intake is kept and the credit refunded; the error
    reaches the caller unchanged.
    """
    with transaction.atomic():
        diagnosis = create_diagnosis(scope, actor, intake)
        bucket = credits.use_credit(actor)
    try:
        result, raw = webhook.request_diagnosis(build_webhook_payload(scope, diagnosis))
    except ExternalServiceError:
        logger.warning('diagnosis %s saved without an AI result', diagnosis.pk)
        credits.refund_credit(actor, bucket)
        raise
    diagnosis = attach_result(scope, actor, diagnosis.pk, result, raw)
    _store_inventory_suggestions(scope, actor, diagnosis, result)
    save_patient_from_diagnosis(scope, actor, diagnosis)
    diagnosis.refresh_from_db()
    log_action(user=actor, action='diagnosis_ai_result', object_type='diagnosis', object_id=diagnosis.pk,
               detail={'severity': diagnosis.severity_level, 'confidence': str(diagnosis.confidence_score)})
    return diagnosis


def update_diagnosis(scope, actor, pk, changes: dict, edit_location: Optional[str] = None) -> Diagnosis:
    """Apply a clinician's corrections and stamp the edit trail."""
    ensure_permission(actor, scope, 'diagnose_patients', 'edit diagnoses')
    data = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS}
    if 'complaint' in data and not (data['complaint'] or '').strip():
        raise ValidationError('Complaint is required')
    _check_pain_scale(data.get('pain_scale'))
    data.update({
        'last_edited_by': actor,
        'last_edited_by_email': actor.email,
        'last_edited_at': timezone.now(),
        'edit_location': edit_location or DEFAULT_EDIT_LOCATION,
    })
    diagnosis = scoping.update_record('diagnoses', scope, pk, data)
    log_action(user=actor, action='diagnosis_edit', object_type='diagnosis', object_id=diagnosis.pk,
               detail={'fields': sorted(k for k in changes if k in EDITABLE_FIELDS),
                       'location': diagnosis.edit_location})
    return diagnosis


def delete_diagnosis(scope, actor, pk) -> None:
    ensure_permission(actor, scope, 'diagnose_patients', 'delete diagnoses')
    scoping.delete_record('diagnoses', scope, pk)
    log_action(user=actor, action='diagnosis_delete', object_type='diagnosis', object_id=pk,
               detail={'mode': scope.mode, 'organization': scope.organization_id})


def list_drug_suggestions(scope, diagnosis_id):
    diagnosis = get_diagnosis(scope, diagnosis_id)
    return diagnosis.drug_suggestion_rows.select_related('drug').all()


def add_drug_suggestion(scope, actor, diagnosis_id, *, drug_id=None, drug_name: str = '',
                        suggested_dosage: str = '', treatment_duration: str = '',
                        administration_notes: str = '', priority_level: int = 1,
                        suggested_by_ai: bool = False, manual_selection: bool = True) -> DiagnosisDrugSuggestion:
    ensure_permission(actor, scope, 'diagnose_patients')
    diagnosis = get_diagnosis(scope, diagnosis_id)
    drug = inventory.get_drug(scope, drug_id) if drug_id else None
    name = (drug_name or (drug.drug_name if drug else '')).strip()
    if not name:
        raise ValidationError('A drug or drug name is required')
    if priority_level < 1:
        raise ValidationError('Priority level starts at 1')
    with scoping.write_guard('add drug suggestion'):
        suggestion = DiagnosisDrugSuggestion.objects.create(
            diagnosis=diagnosis, drug=drug, drug_name=name,
            suggested_dosage=suggested_dosage, treatment_duration=treatment_duration,
            administration_notes=administration_notes, priority_level=priority_level,
            suggested_by_ai=suggested_by_ai, manual_selection=manual_selection, created_by=actor,
        )
    publish_refresh(scope, 'diagnoses', 'updated', diagnosis.pk)
    return suggestion


def remove_drug_suggestion(scope, actor, diagnosis_id, suggestion_id) -> None:
    ensure_permission(actor, scope, 'diagnose_patients')
    diagnosis = get_diagnosis(scope, diagnosis_id)
    deleted, _ = diagnosis.drug_suggestion_rows.filter(pk=suggestion_id).delete()
    if not deleted:
        raise NotFoundError('Drug suggestion not found')
    publish_refresh(scope, 'diagnoses', 'updated', diagnosis.pk)
