"""
Drug inventory and the dispensing ledger.

Stock is decremented with a conditional UPDATE (``stock_quantity >=
quantity``) inside the same transaction that appends the ledger row,
so two concurrent dispenses can never drive a drug below zero and a
rejected dispense leaves no trace.
"""
from __future__ import annotations

import logging
import re
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from django.conf import settings
from django.db.models import F, Q
from django.utils import timezone

from clinic.exceptions import DataAccessError, InsufficientStockError, ValidationError
from clinic.models import Drug, DrugCategory, DrugUsage
from clinic.services import scoping
from clinic.services.audit import log_action
from clinic.services.events import publish_refresh
from clinic.services.permissions import ensure_permission

logger = logging.getLogger(__name__)

CONDITION_DRUGS = [
    (r'pain|headache|fever|temperature|migraine|toothache',
     ('paracetamol', 'ibuprofen', 'analgin', 'aspirin', 'ketanov', 'acetaminophen', 'naproxen', 'diclofenac')),
    (r'cough|runny nose|cold|respiratory|sore throat|bronchitis|asthma',
     ('acc', 'mucosolvan', 'broncho', 'salbutamol', 'ventolin', 'berodual', 'expectorant')),
    (r'nausea|vomit|diarrh|stomach|gastro|constipation|bloating|heartburn|acid',
     ('metoclopramid', 'loperamid', 'smecta', 'rehydron', 'omeprazol', 'antacid', 'lactulose', 'simeticon')),
    (r'infection|bacteria|pneumonia|sinusitis|urinary',
     ('azithromycin', 'amoxicillin', 'cipro', 'ceftriaxon', 'clarithromycin', 'doxycycline')),
    (r'skin|rash|wound|cut|eczema|dermatitis|psoriasis|fungal',
     ('bepanthen', 'betadin', 'clotrimazol', 'hydrocortisone', 'miconazole')),
    (r'allerg|itch|hives',
     ('loratadin', 'cetirizin', 'suprastin', 'fenistil', 'zyrtec')),
    (r'heart|blood pressure|hypertension|chest pain|arrhythmia',
     ('atenolol', 'amlodipine', 'enalapril', 'metoprolol', 'lisinopril')),
    (r'diabetes|blood sugar',
     ('metformin', 'insulin', 'gliclazide')),
    (r'anxiety|depression|sleep|insomnia|stress',
     ('melatonin', 'valerian', 'diazepam')),
]


def low_stock_threshold() -> int:
    return getattr(settings, 'LOW_STOCK_THRESHOLD', 10)


def list_drugs(scope, *, include_inactive: bool = False):
    qs = scoping.list_records('drugs', scope).select_related('category')
    if not include_inactive:
        qs = qs.filter(is_active=True)
    return qs.order_by('drug_name', 'id')


def search_drugs(scope, term: Optional[str]):
    qs = list_drugs(scope)
    term = (term or '').strip()
    if term:
        qs = qs.filter(
            Q(drug_name__icontains=term)
            | Q(generic_name__icontains=term)
            | Q(brand_name__icontains=term)
        )
    return qs


def get_drug(scope, pk) -> Drug:
    return scoping.get_record('drugs', scope, pk)


def low_stock(scope, threshold: Optional[int] = None):
    limit = low_stock_threshold() if threshold is None else threshold
    return list_drugs(scope).filter(stock_quantity__lte=limit).order_by('stock_quantity', 'drug_name')


def expired_drugs(scope, on: Optional[date] = None):
    return list_drugs(scope).filter(expiry_date__lt=on or timezone.localdate())


def list_categories():
    return DrugCategory.objects.all()


def create_drug(scope, actor, data: dict) -> Drug:
    ensure_permission(actor, scope, 'manage_inventory')
    drug = scoping.create_record('drugs', scope, data, actor=actor)
    log_action(user=actor, action='drug_create', object_type='drug', object_id=drug.pk,
               detail={'name': drug.drug_name, 'stock': drug.stock_quantity})
    return drug


def update_drug(scope, actor, pk, changes: dict) -> Drug:
    ensure_permission(actor, scope, 'manage_inventory')
    drug = scoping.update_record('drugs', scope, pk, changes, actor=actor)
    log_action(user=actor, action='drug_update', object_type='drug', object_id=drug.pk,
               detail={'fields': sorted(changes)})
    return drug


def delete_drug(scope, actor, pk) -> Drug:
    """Soft delete: the entry disappears from the inventory but its ledger stays intact."""
    ensure_permission(actor, scope, 'manage_inventory')
    drug = scoping.update_record('drugs', scope, pk, {'is_active': False}, actor=actor)
    log_action(user=actor, action='drug_delete', object_type='drug', object_id=drug.pk,
               detail={'name': drug.drug_name})
    return drug


def _positive_quantity(quantity) -> int:
    if isinstance(quantity, str) and quantity.strip().isdigit():
        quantity = int(quantity)
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError('Quantity must be a positive whole number')
    return quantity


def _decrement(drug: Drug, quantity: int) -> Drug:
    updated = Drug.objects.filter(pk=drug.pk, stock_quantity__gte=quantity).update(
        stock_quantity=F('stock_quantity') - quantity,
        updated_at=timezone.now(),
    )
    if not updated:
        drug.refresh_from_db(fields=['stock_quantity'])
        logger.info('refused to take %s units of drug %s, %s in stock', quantity, drug.pk, drug.stock_quantity)
        raise InsufficientStockError(
            f'Insufficient stock quantity for {drug.drug_name}: '
            f'{drug.stock_quantity} available, {quantity} requested'
        )
    drug.refresh_from_db()
    drug.save(update_fields=['whole_packs_count', 'loose_units_count'])
    return drug


def _active_drug(scope, drug_id) -> Drug:
    drug = scoping.get_record('drugs', scope, drug_id)
    if not drug.is_active:
        raise ValidationError(f'{drug.drug_name} is no longer in the inventory')
    return drug


def adjust_stock(scope, actor, drug_id, change: int) -> Drug:
    """Apply a signed stock correction; the result can never drop below zero."""
    ensure_permission(actor, scope, 'manage_inventory')
    if not isinstance(change, int) or isinstance(change, bool) or change == 0:
        raise ValidationError('Stock change must be a non-zero whole number')
    with scoping.write_guard('adjust stock'):
        drug = _active_drug(scope, drug_id)
        if change < 0:
            drug = _decrement(drug, -change)
        else:
            Drug.objects.filter(pk=drug.pk).update(
                stock_quantity=F('stock_quantity') + change, updated_at=timezone.now()
            )
            drug.refresh_from_db()
            drug.save(update_fields=['whole_packs_count', 'loose_units_count'])
    publish_refresh(scope, 'drugs', 'updated', drug.pk)
    log_action(user=actor, action='drug_stock_adjust', object_type='drug', object_id=drug.pk,
               detail={'change': change, 'stock': drug.stock_quantity})
    return drug


def _append_usage(scope, actor, drug: Drug, quantity: int, **fields) -> DrugUsage:
    return scoping.create_record('usage', scope, {
        'drug': drug,
        'drug_name': drug.drug_name,
        'dispensed_by': actor,
        'quantity_dispensed': quantity,
        'dispensed_date': timezone.now(),
        **fields,
    })


def record_usage(scope, actor, drug_id, quantity, diagnosis_id=None, note: Optional[str] = None,
                 patient_info: Optional[dict] = None) -> DrugUsage:
    """Dispense ``quantity`` units of a drug and append the ledger entry."""
    ensure_permission(actor, scope, 'dispense_drugs')
    quantity = _positive_quantity(quantity)
    with scoping.write_guard('record drug usage'):
        drug = _active_drug(scope, drug_id)
        diagnosis = scoping.get_record('diagnoses', scope, diagnosis_id) if diagnosis_id else None
        drug = _decrement(drug, quantity)
        entry = _append_usage(scope, actor, drug, quantity, diagnosis=diagnosis,
                              patient_info=patient_info, notes=note or '')
    publish_refresh(scope, 'drugs', 'updated', drug.pk)
    log_action(user=actor, action='drug_dispense', object_type='drug', object_id=drug.pk,
               detail={'quantity': quantity, 'diagnosis': diagnosis_id, 'stock': drug.stock_quantity})
    return entry


def write_off(scope, actor, drug_id, quantity, reason: str, note: Optional[str] = None) -> DrugUsage:
    """Remove stock for a reason other than dispensing (expiry, damage, loss)."""
    ensure_permission(actor, scope, 'write_off_drugs')
    quantity = _positive_quantity(quantity)
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError('A write-off reason is required')
    now = timezone.now()
    with scoping.write_guard('write off drug'):
        drug = _active_drug(scope, drug_id)
        drug = _decrement(drug, quantity)
        entry = _append_usage(scope, actor, drug, quantity, notes=note or '', is_write_off=True,
                              write_off_reason=reason, write_off_by=actor, write_off_date=now)
    publish_refresh(scope, 'drugs', 'updated', drug.pk)
    log_action(user=actor, action='drug_write_off', object_type='drug', object_id=drug.pk,
               detail={'quantity': quantity, 'reason': reason, 'stock': drug.stock_quantity})
    return entry


def patient_info_for(diagnosis) -> dict:
    return {
        'name': diagnosis.patient_name,
        'surname': diagnosis.patient_surname,
        'external_id': diagnosis.external_id,
        'age': diagnosis.patient_age,
        'gender': diagnosis.patient_gender,
        'primary_diagnosis': diagnosis.primary_diagnosis,
    }


def dispense_for_diagnosis(scope, actor, diagnosis_id, items: Iterable[dict],
                           patient_info: Optional[dict] = None,
                           skip_duplicate_check: bool = False) -> list[DrugUsage]:
    """Dispense several drugs for one diagnosis, all or nothing.

    Each item is ``{'drug_id': ..., 'quantity': ..., 'notes': ...}``.
    A diagnosis that already has dispensing entries is refused unless
    ``skip_duplicate_check`` is set.
    """
    ensure_permission(actor, scope, 'dispense_drugs')
    items = list(items)
    if not items:
        raise ValidationError('Select at least one drug to dispense')
    diagnosis = scoping.get_record('diagnoses', scope, diagnosis_id)
    if not skip_duplicate_check and scoping.scoped_queryset('usage', scope).filter(
            diagnosis=diagnosis, is_write_off=False).exists():
        raise ValidationError('Drugs have already been dispensed for this diagnosis')
    info = patient_info if patient_info is not None else patient_info_for(diagnosis)
    entries = []
    with scoping.write_guard('dispense for diagnosis'):
        for item in items:
            quantity = _positive_quantity(item.get('quantity'))
            drug = _decrement(_active_drug(scope, item.get('drug_id')), quantity)
            entries.append(_append_usage(scope, actor, drug, quantity, diagnosis=diagnosis,
                                         patient_info=info, notes=item.get('notes') or ''))
            publish_refresh(scope, 'drugs', 'updated', drug.pk)
    log_action(user=actor, action='drug_dispense', object_type='diagnosis', object_id=diagnosis.pk,
               detail={'items': [{'drug': e.drug_id, 'quantity': e.quantity_dispensed} for e in entries]})
    return entries


def usage_history(scope, actor, *, date_from=None, date_to=None, drug_id=None, write_offs: Optional[bool] = None):
    ensure_permission(actor, scope, 'view_reports')
    qs = scoping.list_records('usage', scope).select_related('drug', 'diagnosis', 'dispensed_by')
    if date_from:
        qs = qs.filter(dispensed_date__date__gte=date_from)
    if date_to:
        qs = qs.filter(dispensed_date__date__lte=date_to)
    if drug_id:
        qs = qs.filter(drug_id=drug_id)
    if write_offs is not None:
        qs = qs.filter(is_write_off=write_offs)
    return qs.order_by('-dispensed_date', '-id')


def diagnosis_dispensing(scope, diagnosis_id):
    diagnosis = scoping.get_record('diagnoses', scope, diagnosis_id)
    return scoping.list_records('usage', scope, filters={'diagnosis': diagnosis}).select_related('drug')


def relevant_drugs(scope, text: str, limit: int = 200) -> list[Drug]:
    """In-stock drugs ranked by how well they fit the complaint ``text``.

    Drugs matching a condition named in the text rank first; every other
    in-stock drug is still included with the minimum score.
    """
    text = (text or '').lower()
    conditions = [keywords for pattern, keywords in CONDITION_DRUGS if re.search(pattern, text)]
    ranked = []
    for drug in list_drugs(scope).filter(stock_quantity__gt=0):
        names = ' '.join([drug.drug_name, drug.generic_name, drug.active_ingredient]).lower()
        indications = ' '.join(str(i) for i in (drug.indications or [])).lower()
        score = 0.0
        for keywords in conditions:
            if any(k in names for k in keywords):
                score += 10
        if indications and any(word in indications for word in text.split() if len(word) > 3):
            score += 5
        if drug.dosage_form in ('tablet', 'capsule'):
            score += 1
        ranked.append((max(score, 1), drug))
    ranked.sort(key=lambda pair: (-pair[0], pair[1].drug_name))
    return [drug for _, drug in ranked[:limit]]


def undispensed_medications(scope, patient_id=None) -> dict:
    """Suggested drugs of diagnoses in this context that were never dispensed for that diagnosis.

    A suggestion counts as dispensed once a non write-off ledger entry of
    the same diagnosis names the same drug (by inventory id, or by name for
    suggestions outside the inventory).
    """
    qs = scoping.list_records('diagnoses', scope).filter(drug_suggestion_rows__isnull=False)
    if patient_id:
        qs = qs.filter(patient_id=patient_id)
    diagnoses = list(
        qs.distinct().select_related('patient').prefetch_related('drug_suggestion_rows').order_by('-created_at', '-id')
    )
    by_drug, by_name = set(), set()
    for row in scoping.scoped_queryset('usage', scope).filter(
            is_write_off=False, diagnosis_id__in=[d.pk for d in diagnoses]).values('diagnosis_id', 'drug_id',
                                                                                   'drug_name'):
        if row['drug_id']:
            by_drug.add((row['diagnosis_id'], row['drug_id']))
        by_name.add((row['diagnosis_id'], (row['drug_name'] or '').lower()))

    entries, total = [], 0
    for dx in diagnoses:
        pending = []
        for s in dx.drug_suggestion_rows.all():
            if (dx.pk, s.drug_id) in by_drug or (dx.pk, s.drug_name.lower()) in by_name:
                continue
            pending.append({'suggestionId': s.pk, 'drugId': s.drug_id, 'drugName': s.drug_name,
                            'priority': s.priority_level})
        if not pending:
            continue
        total += len(pending)
        entries.append({
            'patientId': dx.patient_id,
            'patientName': str(dx.patient) if dx.patient else f"{dx.patient_name} {dx.patient_surname}".strip(),
            'diagnosisId': dx.pk,
            'primaryDiagnosis': dx.primary_diagnosis,
            'undispensedDrugs': pending,
        })
    return {'patients': entries, 'totalUndispensedCount': total, 'hasAnyUndispensed': bool(entries)}


# first match wins
IMPORT_DOSAGE_FORMS = [
    (('tablet',), 'tablet'),
    (('capsul',), 'capsule'),
    (('cream', 'krēms'), 'cream'),
    (('ointment', 'ziede'), 'ointment'),
    (('gel',), 'cream'),
    (('solution', 'šķīdums'), 'injection'),
    (('drops', 'pilieni'), 'drops'),
    (('aerosol', 'spray'), 'spray'),
    (('syrup', 'sīrups'), 'syrup'),
    (('powder', 'pulveris'), 'powder'),
]
_STRENGTH = re.compile(r'(\d+(?:\.\d+)?(?:mg|g|ml|%|IU|SV|mkg|mcg))', re.IGNORECASE)


def _import_dosage_form(text: str) -> str:
    lower = (text or '').strip().lower()
    if not lower:
        return ''
    for words, form in IMPORT_DOSAGE_FORMS:
        if any(w in lower for w in words):
            return form
    return 'other'


def drug_from_import_row(row: dict, categories: dict, index: int) -> dict:
    """Map one catalogue row (``name``, ``category``, ``type``, ``dosage`` ...) to drug fields."""
    name = str(row.get('name') or row.get('description') or '').strip()
    if not name:
        raise ValidationError('Drug name is required')
    price = row.get('price')
    try:
        unit_price = Decimal(str(price)) if price not in (None, '') else None
    except ArithmeticError:
        raise ValidationError(f'Invalid price: {price}') from None
    if unit_price is not None and (not unit_price.is_finite() or unit_price < 0):
        raise ValidationError(f'Invalid price: {price}')
    category = categories.get(str(row.get('category') or '').lower()) or categories.get(
        str(row.get('type') or '').lower())
    found = _STRENGTH.search(name)
    strength = row.get('dosage') or (found.group(1) if found else '')
    ingredient = str(row.get('active_ingredient') or '')
    source_row = row.get('original_row') or index
    return {
        'drug_name': name[:255],
        'drug_name_lv': name[:255],
        'generic_name': ingredient[:255],
        'active_ingredient': ingredient,
        'category': category,
        'dosage_form': _import_dosage_form(str(row.get('form') or row.get('type') or '')),
        'strength': str(strength)[:100],
        'stock_quantity': 0 if row.get('available') is False else 1,
        'unit_price': unit_price,
        'supplier': str(row.get('supplier') or '')[:255],
        'notes': f'Imported from JSON (row {source_row})',
    }


def import_drugs(scope, actor, rows) -> dict:
    """Add catalogue rows to the inventory one by one; a bad row is reported and skipped."""
    ensure_permission(actor, scope, 'manage_inventory')
    if not isinstance(rows, list) or not rows:
        raise ValidationError('Provide a non-empty list of drugs')
    categories = {c.name.lower(): c for c in DrugCategory.objects.all()}
    imported, errors = 0, []
    for index, row in enumerate(rows, start=1):
        label = str(row.get('name') or f'row {index}') if isinstance(row, dict) else f'row {index}'
        try:
            if not isinstance(row, dict):
                raise ValidationError('Each entry must be an object')
            scoping.create_record('drugs', scope, drug_from_import_row(row, categories, index), actor=actor)
        except (ValidationError, DataAccessError) as exc:
            errors.append(f'{label}: {exc.detail}')
            continue
        imported += 1
    logger.info('drug import by user %s: %s imported, %s failed', actor.pk, imported, len(errors))
    log_action(user=actor, action='drug_import', object_type='drug',
               detail={'imported': imported, 'failed': len(errors), 'mode': scope.mode})
    return {'imported': imported, 'failed': len(errors), 'errors': errors}
