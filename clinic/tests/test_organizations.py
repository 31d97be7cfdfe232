import pytest

from clinic.exceptions import AuthorizationError, NotFoundError, ValidationError
from clinic.models import Organization, OrganizationMember, Patient
from clinic.services import organizations, patients
from clinic.services.context import Scope, resolve_mode

pytestmark = pytest.mark.django_db


def test_creator_becomes_admin_with_full_bundle(user, org):
    member = OrganizationMember.objects.get(organization=org, user=user)
    assert member.role == 'admin'
    assert member.status == 'active'
    assert all(member.permissions.values())
    assert org.settings['shared_inventory'] is True


def test_organization_name_is_validated(user):
    with pytest.raises(ValidationError):
        organizations.create_organization(user, ' x ')
    with pytest.raises(ValidationError):
        organizations.create_organization(user, 'Valid Name', settings={'unknown': True})


def test_only_admins_update(user, org, other_user, add_member):
    add_member(org, other_user)
    with pytest.raises(AuthorizationError):
        organizations.update_organization(other_user, org.id, name='Renamed')
    updated = organizations.update_organization(user, org.id, name='Renamed', settings={'shared_patients': False})
    assert updated.name == 'Renamed'
    assert updated.settings == {
        'shared_inventory': True, 'shared_patients': False, 'require_approval_for_members': True,
    }


def test_only_creator_deletes(user, org, org_scope, other_user, add_member):
    add_member(org, other_user, role='admin')
    patients.create_patient(org_scope, user, {'patient_name': 'Shared'})
    with pytest.raises(AuthorizationError):
        organizations.delete_organization(other_user, org.id)
    organizations.delete_organization(user, org.id)
    assert not Organization.objects.filter(pk=org.id).exists()
    assert not Patient.objects.exists()


def test_stats_and_members_need_active_membership(user, org, other_user, add_member, make_user):
    add_member(org, other_user)
    stats = organizations.organization_stats(user, org.id)
    assert stats == {'totalMembers': 2, 'adminCount': 1, 'memberCount': 1, 'pendingInvitations': 0}
    assert organizations.list_members(other_user, org.id).count() == 2

    outsider = make_user('outsider@example.com')
    with pytest.raises(AuthorizationError):
        organizations.list_members(outsider, org.id)
    with pytest.raises(NotFoundError):
        organizations.organization_stats(user, 9999)


def test_permission_update_merges_into_bundle(user, org, other_user, add_member):
    member = add_member(org, other_user)
    updated = organizations.update_member_permissions(user, org.id, member.pk, {'manage_inventory': True})
    assert updated.permissions['manage_inventory'] is True
    assert updated.permissions['diagnose_patients'] is True
    with pytest.raises(ValidationError):
        organizations.update_member_permissions(user, org.id, member.pk, {'manage_inventory': 'yes'})


def test_manage_members_flag_grants_member_management(user, org, other_user, add_member, make_user):
    add_member(org, other_user, manage_members=True)
    third = add_member(org, make_user('third@example.com'))
    organizations.update_member_status(other_user, org.id, third.pk, 'suspended')
    third.refresh_from_db()
    assert third.status == 'suspended'


def test_last_admin_cannot_leave(user, org):
    with pytest.raises(ValidationError):
        organizations.leave_organization(user, org.id)


def test_admin_demotes_another_admin(user, org, other_user, add_member):
    second = add_member(org, other_user, role='admin')
    organizations.update_member_role(user, org.id, second.pk, 'member')
    second.refresh_from_db()
    assert second.role == 'member'


def test_member_manager_cannot_escalate(user, org, other_user, add_member):
    me = add_member(org, other_user, manage_members=True)
    creator_row = OrganizationMember.objects.get(organization=org, user=user)

    with pytest.raises(AuthorizationError):
        organizations.update_member_permissions(other_user, org.id, me.pk, {'manage_inventory': True})
    with pytest.raises(AuthorizationError):
        organizations.update_member_role(other_user, org.id, me.pk, 'admin')
    with pytest.raises(AuthorizationError):
        organizations.update_member_role(other_user, org.id, creator_row.pk, 'member')
    with pytest.raises(AuthorizationError):
        organizations.update_member_status(other_user, org.id, creator_row.pk, 'suspended')
    with pytest.raises(AuthorizationError):
        organizations.remove_member(other_user, org.id, creator_row.pk)

    me.refresh_from_db()
    creator_row.refresh_from_db()
    assert me.role == 'member'
    assert me.permissions['manage_inventory'] is False
    assert (creator_row.role, creator_row.status) == ('admin', 'active')


def test_member_manager_cannot_touch_other_admins(org, other_user, add_member, make_user):
    add_member(org, other_user, manage_members=True)
    admin_row = add_member(org, make_user('admin2@example.com'), role='admin')
    with pytest.raises(AuthorizationError):
        organizations.update_member_status(other_user, org.id, admin_row.pk, 'suspended')
    with pytest.raises(AuthorizationError):
        organizations.remove_member(other_user, org.id, admin_row.pk)
    admin_row.refresh_from_db()
    assert admin_row.status == 'active'


def test_nobody_edits_their_own_row(org, other_user, add_member):
    own = add_member(org, other_user, role='admin', write_off_drugs=True)
    with pytest.raises(ValidationError):
        organizations.update_member_role(other_user, org.id, own.pk, 'member')
    with pytest.raises(ValidationError):
        organizations.update_member_permissions(other_user, org.id, own.pk, {'write_off_drugs': False})
    own.refresh_from_db()
    assert own.role == 'admin'
    assert own.permissions['write_off_drugs'] is True


def test_creator_row_is_protected_from_other_admins(user, org, other_user, add_member):
    add_member(org, other_user, role='admin')
    creator_row = OrganizationMember.objects.get(organization=org, user=user)
    with pytest.raises(AuthorizationError):
        organizations.update_member_role(other_user, org.id, creator_row.pk, 'member')
    with pytest.raises(AuthorizationError):
        organizations.update_member_permissions(other_user, org.id, creator_row.pk, {'manage_members': False})
    creator_row.refresh_from_db()
    assert creator_row.role == 'admin'
    assert creator_row.permissions['manage_members'] is True

def test_cannot_suspend_or_remove_yourself(user, org):
    me = OrganizationMember.objects.get(organization=org, user=user)
    with pytest.raises(ValidationError):
        organizations.update_member_status(user, org.id, me.pk, 'suspended')
    with pytest.raises(ValidationError):
        organizations.remove_member(user, org.id, me.pk)


def test_removed_member_loses_the_context(user, org, other_user, add_member):
    member = add_member(org, other_user)
    assert resolve_mode(other_user).can_switch_to_organization is True
    organizations.remove_member(user, org.id, member.pk)
    assert resolve_mode(other_user).can_switch_to_organization is False
    with pytest.raises(NotFoundError):
        organizations.remove_member(user, org.id, member.pk)


def test_member_can_leave(org, other_user, add_member):
    add_member(org, other_user)
    organizations.leave_organization(other_user, org.id)
    assert not OrganizationMember.objects.filter(user=other_user).exists()
    with pytest.raises(NotFoundError):
        organizations.leave_organization(other_user, org.id)


def test_suspended_member_rows_are_not_readable(user, org, org_scope, other_user, add_member):
    add_member(org, other_user, status='suspended')
    patients.create_patient(org_scope, user, {'patient_name': 'Shared'})
    info = resolve_mode(other_user)
    assert info.scope == Scope.individual(other_user)
    assert patients.list_patients(info.scope).count() == 0
