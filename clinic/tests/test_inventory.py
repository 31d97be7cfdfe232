from datetime import timedelta

import pytest
from django.utils import timezone

from clinic.exceptions import AuthorizationError, InsufficientStockError, NotFoundError, ValidationError
from clinic.models import Drug, DrugUsage, Organization
from clinic.services import diagnosis as diagnosis_service
from clinic.services import inventory
from clinic.services.context import Scope

pytestmark = pytest.mark.django_db


@pytest.fixture
def drug(user, individual):
    return inventory.create_drug(individual, user, {
        'drug_name': 'Paracetamol', 'strength': '500mg', 'stock_quantity': 5, 'units_per_pack': 2,
    })


def test_create_drug_splits_packs(drug):
    assert (drug.whole_packs_count, drug.loose_units_count) == (2, 1)


def test_usage_equal_to_stock_empties_it(user, individual, drug):
    entry = inventory.record_usage(individual, user, drug.pk, 5)
    drug.refresh_from_db()
    assert drug.stock_quantity == 0
    assert (drug.whole_packs_count, drug.loose_units_count) == (0, 0)
    assert entry.quantity_dispensed == 5
    assert entry.owner_user_id == user.pk
    assert entry.dispensed_by == user


def test_usage_above_stock_is_refused_without_trace(user, individual, drug):
    with pytest.raises(InsufficientStockError):
        inventory.record_usage(individual, user, drug.pk, 6)
    drug.refresh_from_db()
    assert drug.stock_quantity == 5
    assert DrugUsage.objects.count() == 0


@pytest.mark.parametrize('quantity', [0, -3, 2.5, 'many', True])
def test_usage_needs_positive_whole_quantity(user, individual, drug, quantity):
    with pytest.raises(ValidationError):
        inventory.record_usage(individual, user, drug.pk, quantity)


def test_usage_links_diagnosis_of_the_same_context(user, individual, org_scope, drug):
    own = diagnosis_service.create_diagnosis(individual, user, {'complaint': 'Headache'})
    foreign = diagnosis_service.create_diagnosis(org_scope, user, {'complaint': 'Headache'})
    entry = inventory.record_usage(individual, user, drug.pk, 1, diagnosis_id=own.pk, note='after meals')
    assert entry.diagnosis == own
    assert entry.notes == 'after meals'
    with pytest.raises(NotFoundError):
        inventory.record_usage(individual, user, drug.pk, 1, diagnosis_id=foreign.pk)


def test_drug_of_other_context_cannot_be_dispensed(user, org_scope, drug):
    with pytest.raises(NotFoundError):
        inventory.record_usage(org_scope, user, drug.pk, 1)


def test_admin_elsewhere_is_still_plain_member_here(user, org, make_user, add_member):
    # admin of one organization, plain member of another
    colleague = make_user('colleague@example.com')
    other = Organization.objects.create(name='Other Clinic')
    add_member(other, colleague, role='admin', manage_inventory=True)
    add_member(org, colleague)
    with pytest.raises(AuthorizationError):
        inventory.create_drug(Scope.organization(colleague, org.id), colleague, {'drug_name': 'Ibuprofen'})
    created = inventory.create_drug(Scope.organization(colleague, other.id), colleague, {'drug_name': 'Ibuprofen'})
    assert created.organization_id == other.id


def test_member_without_dispense_flag(user, org, org_scope, other_user, add_member):
    add_member(org, other_user, dispense_drugs=False)
    shared = inventory.create_drug(org_scope, user, {'drug_name': 'Aspirin', 'stock_quantity': 3})
    with pytest.raises(AuthorizationError):
        inventory.record_usage(Scope.organization(other_user, org.id), other_user, shared.pk, 1)
    shared.refresh_from_db()
    assert shared.stock_quantity == 3


def test_adjust_stock(user, individual, drug):
    assert inventory.adjust_stock(individual, user, drug.pk, 10).stock_quantity == 15
    assert inventory.adjust_stock(individual, user, drug.pk, -15).stock_quantity == 0
    with pytest.raises(InsufficientStockError):
        inventory.adjust_stock(individual, user, drug.pk, -1)
    with pytest.raises(ValidationError):
        inventory.adjust_stock(individual, user, drug.pk, 0)


def test_write_off_requires_reason_and_flag(user, org, org_scope, other_user, add_member):
    shared = inventory.create_drug(org_scope, user, {'drug_name': 'Ibuprofen', 'stock_quantity': 4})
    with pytest.raises(ValidationError):
        inventory.write_off(org_scope, user, shared.pk, 1, reason='  ')
    entry = inventory.write_off(org_scope, user, shared.pk, 3, reason='expired')
    assert entry.is_write_off is True
    assert entry.write_off_by == user
    assert entry.organization_id == org.id

    add_member(org, other_user)
    with pytest.raises(AuthorizationError):
        inventory.write_off(Scope.organization(other_user, org.id), other_user, shared.pk, 1, reason='damaged')


def test_soft_deleted_drug_leaves_listing_and_keeps_ledger(user, individual, drug):
    inventory.record_usage(individual, user, drug.pk, 1)
    inventory.delete_drug(individual, user, drug.pk)
    assert list(inventory.list_drugs(individual)) == []
    assert inventory.list_drugs(individual, include_inactive=True).count() == 1
    assert DrugUsage.objects.filter(drug_id=drug.pk).count() == 1
    with pytest.raises(ValidationError):
        inventory.record_usage(individual, user, drug.pk, 1)


def test_dispense_for_diagnosis_is_all_or_nothing(user, individual, drug):
    other = inventory.create_drug(individual, user, {'drug_name': 'Ibuprofen', 'stock_quantity': 1})
    dx = diagnosis_service.create_diagnosis(individual, user, {'complaint': 'Fever', 'patient_name': 'Ilze'})
    with pytest.raises(InsufficientStockError):
        inventory.dispense_for_diagnosis(individual, user, dx.pk, [
            {'drug_id': drug.pk, 'quantity': 2},
            {'drug_id': other.pk, 'quantity': 2},
        ])
    drug.refresh_from_db()
    assert drug.stock_quantity == 5
    assert DrugUsage.objects.count() == 0

    entries = inventory.dispense_for_diagnosis(individual, user, dx.pk, [
        {'drug_id': drug.pk, 'quantity': 2},
        {'drug_id': other.pk, 'quantity': 1},
    ])
    assert [e.quantity_dispensed for e in entries] == [2, 1]
    assert entries[0].patient_info['name'] == 'Ilze'

    with pytest.raises(ValidationError):
        inventory.dispense_for_diagnosis(individual, user, dx.pk, [{'drug_id': drug.pk, 'quantity': 1}])
    inventory.dispense_for_diagnosis(individual, user, dx.pk, [{'drug_id': drug.pk, 'quantity': 1}],
                                     skip_duplicate_check=True)
    assert inventory.diagnosis_dispensing(individual, dx.pk).count() == 3


def test_low_stock_and_expired(user, individual, drug, settings):
    settings.LOW_STOCK_THRESHOLD = 5
    inventory.create_drug(individual, user, {'drug_name': 'Plenty', 'stock_quantity': 50})
    inventory.create_drug(individual, user, {
        'drug_name': 'Old', 'stock_quantity': 50, 'expiry_date': timezone.localdate() - timedelta(days=1),
    })
    assert [d.drug_name for d in inventory.low_stock(individual)] == ['Paracetamol']
    assert [d.drug_name for d in inventory.low_stock(individual, threshold=4)] == []
    assert [d.drug_name for d in inventory.expired_drugs(individual)] == ['Old']


def test_usage_history_filters(user, individual, drug):
    inventory.record_usage(individual, user, drug.pk, 1)
    inventory.write_off(individual, user, drug.pk, 1, reason='broken')
    assert inventory.usage_history(individual, user).count() == 2
    assert inventory.usage_history(individual, user, write_offs=True).count() == 1
    assert inventory.usage_history(individual, user, date_from=timezone.localdate() + timedelta(days=1)).count() == 0


def test_relevant_drugs_ranks_matching_condition_first(user, individual):
    inventory.create_drug(individual, user, {'drug_name': 'Loratadin', 'stock_quantity': 10})
    inventory.create_drug(individual, user, {'drug_name': 'Ibuprofen', 'stock_quantity': 10})
    inventory.create_drug(individual, user, {'drug_name': 'Empty Ibuprofen', 'stock_quantity': 0})
    ranked = inventory.relevant_drugs(individual, 'strong headache since morning')
    assert [d.drug_name for d in ranked] == ['Ibuprofen', 'Loratadin']
    assert Drug.objects.count() == 3


def test_undispensed_medications_follow_the_ledger(user, individual, drug):
    dx = diagnosis_service.create_diagnosis(individual, user, {
        'complaint': 'Headache', 'patient_name': 'Anna', 'patient_surname': 'Liepa',
    })
    diagnosis_service.add_drug_suggestion(individual, user, dx.pk, drug_id=drug.pk)
    diagnosis_service.add_drug_suggestion(individual, user, dx.pk, drug_name='Cold compress', priority_level=2)

    pending = inventory.undispensed_medications(individual)
    assert pending['totalUndispensedCount'] == 2
    assert pending['hasAnyUndispensed'] is True
    entry = pending['patients'][0]
    assert entry['diagnosisId'] == dx.pk
    assert entry['patientName'] == 'Anna Liepa'
    assert [d['drugName'] for d in entry['undispensedDrugs']] == ['Paracetamol', 'Cold compress']

    inventory.write_off(individual, user, drug.pk, 1, 'Broken blister')
    assert inventory.undispensed_medications(individual)['totalUndispensedCount'] == 2

    inventory.record_usage(individual, user, drug.pk, 1, diagnosis_id=dx.pk)
    pending = inventory.undispensed_medications(individual)
    assert [d['drugName'] for d in pending['patients'][0]['undispensedDrugs']] == ['Cold compress']


def test_undispensed_medications_stay_in_their_context(user, individual, org_scope, other_user, org, add_member):
    dx = diagnosis_service.create_diagnosis(individual, user, {'complaint': 'Cough'})
    diagnosis_service.add_drug_suggestion(individual, user, dx.pk, drug_name='ACC')

    assert inventory.undispensed_medications(org_scope)['hasAnyUndispensed'] is False
    add_member(org, other_user)
    member_scope = Scope.organization(other_user, org.id)
    assert inventory.undispensed_medications(member_scope)['patients'] == []
    assert inventory.undispensed_medications(Scope.individual(other_user))['totalUndispensedCount'] == 0


def test_import_drugs_maps_catalogue_rows(user, individual):
    result = inventory.import_drugs(individual, user, [
        {'name': 'Ibuprofen 400mg', 'form': 'Film-coated tablets', 'price': 3.2, 'supplier': 'Acme'},
        {'name': 'Bepanthen', 'type': 'ziede', 'dosage': '5%', 'available': False, 'original_row': 12},
        {'name': ''},
        {'name': 'Bad price', 'price': 'cheap'},
    ])
    assert result['imported'] == 2
    assert result['failed'] == 2
    assert result['errors'][0] == 'row 3: Drug name is required'
    assert result['errors'][1].startswith('Bad price: Invalid price')

    ibuprofen = Drug.objects.get(drug_name='Ibuprofen 400mg')
    assert (ibuprofen.dosage_form, ibuprofen.strength, ibuprofen.stock_quantity) == ('tablet', '400mg', 1)
    assert str(ibuprofen.unit_price) == '3.20'
    assert ibuprofen.owner_user_id == user.pk
    bepanthen = Drug.objects.get(drug_name='Bepanthen')
    assert (bepanthen.dosage_form, bepanthen.strength, bepanthen.stock_quantity) == ('ointment', '5%', 0)
    assert bepanthen.notes == 'Imported from JSON (row 12)'


def test_import_needs_manage_inventory(org, other_user, add_member):
    add_member(org, other_user)
    with pytest.raises(AuthorizationError):
        inventory.import_drugs(Scope.organization(other_user, org.id), other_user, [{'name': 'Aspirin'}])
    assert not Drug.objects.exists()
