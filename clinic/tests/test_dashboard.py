from datetime import date
from decimal import Decimal

import pytest

from clinic.models import Diagnosis
from clinic.services import inventory, patients
from clinic.services.dashboard import dashboard_stats, recent_activity

pytestmark = pytest.mark.django_db


def _diagnosis(scope, user, primary, severity='moderate'):
    fields = scope.owner_values()
    return Diagnosis.objects.create(complaint='x', primary_diagnosis=primary, severity_level=severity,
                                    created_by=user, **fields)


def test_stats_cover_only_the_active_context(user, individual, org_scope, settings):
    settings.LOW_STOCK_THRESHOLD = 10
    patients.create_patient(individual, user, {'patient_name': 'A', 'patient_gender': 'male', 'patient_age': 30})
    patients.create_patient(individual, user, {'patient_name': 'B', 'patient_gender': 'female', 'patient_age': 50})
    patients.create_patient(org_scope, user, {'patient_name': 'C', 'patient_gender': 'female'})
    inventory.create_drug(individual, user, {'drug_name': 'Low', 'stock_quantity': 3, 'unit_price': Decimal('2.50')})
    inventory.create_drug(individual, user, {'drug_name': 'Edge', 'stock_quantity': 10, 'unit_price': Decimal('1.00')})
    _diagnosis(individual, user, 'Flu')
    _diagnosis(individual, user, 'Flu', severity='critical')
    _diagnosis(individual, user, 'Otitis')
    _diagnosis(org_scope, user, 'Flu')

    stats = dashboard_stats(individual, user)

    assert stats['totalPatients'] == 2
    assert stats['totalDiagnoses'] == 3
    assert stats['recentDiagnoses'] == 3
    assert stats['totalDrugs'] == 2
    # strictly below the threshold
    assert stats['lowStockDrugs'] == 1
    assert stats['totalDrugValue'] == 17.5
    assert stats['averagePatientAge'] == 40.0
    assert stats['genderDistribution'] == {'male': 1, 'female': 1, 'other': 0}
    assert stats['topDiagnoses'] == [{'diagnosis': 'Flu', 'count': 2}, {'diagnosis': 'Otitis', 'count': 1}]
    assert stats['urgentCases'] == 1
    assert stats['mode'] == 'individual'
    assert stats['organizationName'] is None


def test_organization_stats_report_role(user, org, org_scope):
    stats = dashboard_stats(org_scope, user)
    assert stats['organizationName'] == 'Riga Clinic'
    assert stats['userRole'] == 'admin'
    assert stats['averagePatientAge'] is None


def test_age_from_date_of_birth(user, individual):
    patients.create_patient(individual, user, {'patient_name': 'A', 'date_of_birth': date(2000, 1, 1),
                                               'patient_age': 99})
    age = dashboard_stats(individual, user)['averagePatientAge']
    assert 20 <= age < 99


def test_recent_activity_merges_sources(user, individual):
    patients.create_patient(individual, user, {'patient_name': 'Liga'})
    drug = inventory.create_drug(individual, user, {'drug_name': 'Aspirin', 'stock_quantity': 5})
    inventory.record_usage(individual, user, drug.pk, 2, patient_info={'name': 'Liga'})
    _diagnosis(individual, user, 'Flu')

    items = recent_activity(individual, limit=10)
    assert {item['type'] for item in items} == {'patient', 'dispense', 'diagnosis'}
    dispense = next(item for item in items if item['type'] == 'dispense')
    assert dispense['title'] == '2 x Aspirin'
    assert dispense['subject'] == 'Liga'
    assert len(recent_activity(individual, limit=2)) == 2
