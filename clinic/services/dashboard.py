"""
Read-only rollups for the dashboard, computed over the active partition only.
"""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Optional

from django.db.models import Count, DecimalField, ExpressionWrapper, F, Sum
from django.utils import timezone

from clinic.models import Organization, OrganizationMember
from clinic.services import scoping
from clinic.services.inventory import low_stock_threshold

GENDER_KEYS = ('male', 'female', 'other')
TOP_DIAGNOSES = 5
URGENT_LEVELS = ('high', 'critical')


def _age_on(dob, today) -> int:
    return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))


def _average_age(patients, today) -> Optional[float]:
    ages = []
    for dob, age in patients.values_list('date_of_birth', 'patient_age'):
        if dob:
            ages.append(_age_on(dob, today))
        elif age is not None:
            ages.append(age)
    if not ages:
        return None
    return round(sum(ages) / len(ages), 1)


def _gender_distribution(patients) -> dict:
    counts = {key: 0 for key in GENDER_KEYS}
    for row in patients.values('patient_gender').annotate(n=Count('id')):
        gender = (row['patient_gender'] or '').strip().lower()
        if gender in ('male', 'm'):
            counts['male'] += row['n']
        elif gender in ('female', 'f'):
            counts['female'] += row['n']
        elif gender:
            counts['other'] += row['n']
    return counts


def dashboard_stats(scope, user, *, low_stock_below: Optional[int] = None) -> dict:
    if low_stock_below is None:
        low_stock_below = low_stock_threshold()
    now = timezone.now()
    today = timezone.localdate()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    patients = scoping.scoped_queryset('patients', scope)
    diagnoses = scoping.scoped_queryset('diagnoses', scope)
    drugs = scoping.scoped_queryset('drugs', scope).filter(is_active=True)

    value = drugs.filter(unit_price__isnull=False).aggregate(
        total=Sum(ExpressionWrapper(F('unit_price') * F('stock_quantity'),
                                    output_field=DecimalField(max_digits=14, decimal_places=2)))
    )['total'] or Decimal('0')

    top = (
        diagnoses.exclude(primary_diagnosis='')
        .values('primary_diagnosis')
        .annotate(count=Count('id'))
        .order_by('-count', 'primary_diagnosis')[:TOP_DIAGNOSES]
    )

    organization_name = None
    user_role = None
    if scope.is_organization:
        organization_name = Organization.objects.filter(pk=scope.organization_id).values_list('name', flat=True).first()
        user_role = OrganizationMember.objects.filter(
            organization_id=scope.organization_id, user=user
        ).values_list('role', flat=True).first()

    return {
        'totalPatients': patients.count(),
        'totalDiagnoses': diagnoses.count(),
        'totalDrugs': drugs.count(),
        'recentDiagnoses': diagnoses.filter(created_at__gte=now - timedelta(days=7)).count(),
        'diagnosesThisMonth': diagnoses.filter(created_at__gte=month_start).count(),
        'newPatientsThisMonth': patients.filter(created_at__gte=month_start).count(),
        'lowStockDrugs': drugs.filter(stock_quantity__lt=low_stock_below).count(),
        'expiredDrugs': drugs.filter(expiry_date__lt=today).count(),
        'totalDrugValue': float(value),
        'averagePatientAge': _average_age(patients, today),
        'genderDistribution': _gender_distribution(patients),
        'topDiagnoses': [{'diagnosis': row['primary_diagnosis'], 'count': row['count']} for row in top],
        'urgentCases': diagnoses.filter(severity_level__in=URGENT_LEVELS).count(),
        'mode': scope.mode,
        'organizationName': organization_name,
        'userRole': user_role,
    }


def recent_activity(scope, limit: int = 10) -> list[dict]:
    """Latest diagnoses, new patients and dispenses merged by time."""
    items = []
    for d in scoping.scoped_queryset('diagnoses', scope).order_by('-created_at')[:limit]:
        items.append({
            'type': 'diagnosis',
            'id': d.pk,
            'title': d.primary_diagnosis or d.complaint[:80],
            'subject': f"{d.patient_name} {d.patient_surname}".strip(),
            'severity': d.severity_level or None,
            'at': d.created_at,
        })
    for p in scoping.scoped_queryset('patients', scope).order_by('-created_at')[:limit]:
        items.append({
            'type': 'patient',
            'id': p.pk,
            'title': 'New patient',
            'subject': p.full_name,
            'severity': None,
            'at': p.created_at,
        })
    for u in scoping.scoped_queryset('usage', scope).order_by('-dispensed_date')[:limit]:
        items.append({
            'type': 'write_off' if u.is_write_off else 'dispense',
            'id': u.pk,
            'title': f"{u.quantity_dispensed} x {u.drug_name}",
            'subject': (u.patient_info or {}).get('name') or '',
            'severity': None,
            'at': u.dispensed_date,
        })
    items.sort(key=lambda item: item['at'], reverse=True)
    return items[:limit]
