import pytest

from clinic.exceptions import DataAccessError, NotFoundError, ValidationError, api_exception_handler
from clinic.models import Patient
from clinic.services import patients, scoping
from clinic.services.context import Scope

pytestmark = pytest.mark.django_db


def test_create_stamps_the_active_owner(user, individual, org_scope):
    own = scoping.create_record('patients', individual, {'patient_name': 'Anna'}, actor=user)
    shared = scoping.create_record('patients', org_scope, {'patient_name': 'Berta'}, actor=user)
    assert (own.owner_user_id, own.organization_id) == (user.pk, None)
    assert (shared.owner_user_id, shared.organization_id) == (None, org_scope.organization_id)
    assert own.created_by == user


def test_owner_fields_in_payload_are_ignored(user, individual, org):
    row = scoping.create_record('patients', individual, {
        'patient_name': 'Anna', 'organization_id': org.id, 'owner_user_id': 999,
    })
    assert row.organization_id is None
    assert row.owner_user_id == user.pk

    scoping.update_record('patients', individual, row.pk, {'organization': org})
    row.refresh_from_db()
    assert row.organization_id is None


def test_individual_records_are_invisible_in_organization_mode(user, individual, org_scope):
    patients.create_patient(individual, user, {'patient_name': 'Private', 'patient_surname': 'Case'})
    patients.create_patient(org_scope, user, {'patient_name': 'Shared', 'patient_surname': 'Case'})

    assert [p.patient_name for p in patients.search_patients(org_scope, 'case')] == ['Shared']
    assert [p.patient_name for p in patients.search_patients(individual, 'case')] == ['Private']


def test_members_see_the_same_organization_rows(user, org, org_scope, other_user, add_member):
    add_member(org, other_user)
    patients.create_patient(org_scope, user, {'patient_name': 'Shared'})
    colleague = Scope.organization(other_user, org.id)
    assert scoping.list_records('patients', colleague).count() == 1
    assert scoping.list_records('patients', Scope.individual(other_user)).count() == 0


def test_foreign_row_is_not_found(user, individual, org_scope):
    row = scoping.create_record('patients', org_scope, {'patient_name': 'Shared'})
    with pytest.raises(NotFoundError):
        scoping.get_record('patients', individual, row.pk)
    with pytest.raises(NotFoundError):
        scoping.update_record('patients', individual, row.pk, {'patient_name': 'Hijacked'})
    with pytest.raises(NotFoundError):
        scoping.delete_record('patients', individual, row.pk)
    assert Patient.objects.get(pk=row.pk).patient_name == 'Shared'


def test_usage_entries_are_append_only(individual):
    with pytest.raises(ValidationError):
        scoping.update_record('usage', individual, 1, {'quantity_dispensed': 1})
    with pytest.raises(ValidationError):
        scoping.delete_record('usage', individual, 1)


def test_store_rejection_becomes_data_access_error(individual):
    with pytest.raises(DataAccessError) as excinfo:
        scoping.create_record('drugs', individual, {'drug_name': 'Broken', 'stock_quantity': -1})
    assert excinfo.value.operation == 'create drugs'
    assert scoping.list_records('drugs', individual).count() == 0


def test_data_access_error_hides_the_database_message(individual):
    with pytest.raises(DataAccessError) as excinfo:
        scoping.create_record('drugs', individual, {'drug_name': 'Broken', 'stock_quantity': -1})
    assert str(excinfo.value.detail) == 'create drugs failed'
    assert excinfo.value.cause is not None

    resp = api_exception_handler(DataAccessError('create drugs', RuntimeError('relation "secret" violated')), {})
    assert resp.status_code == 500
    assert resp.data == {'ok': False, 'error': {'code': 'data_access_error', 'message': 'create drugs failed'}}


def test_unknown_family(individual):
    with pytest.raises(ValueError):
        scoping.scoped_queryset('invoices', individual)
