import pytest
from django.core.cache import cache
from rest_framework.test import APIClient

from clinic.models import OrganizationMember, User, default_member_permissions
from clinic.services import organizations
from clinic.services.context import Scope

PASSWORD = 'Str0ng-Passw0rd!'


@pytest.fixture(autouse=True)
def _clear_throttle_cache():
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def make_user(db):
    def _make(email, role='user', verified=True, **extra):
        return User.objects.create_user(
            username=email, email=email, password=PASSWORD,
            role=role, email_verified=verified, **extra,
        )
    return _make


@pytest.fixture
def user(make_user):
    return make_user('doctor@example.com', full_name='Dana Doctor')


@pytest.fixture
def other_user(make_user):
    return make_user('nurse@example.com', full_name='Nora Nurse')


@pytest.fixture
def add_member():
    def _add(org, user, role='member', status='active', **flags):
        bundle = default_member_permissions()
        bundle.update(flags)
        return OrganizationMember.objects.create(
            organization=org, user=user, role=role, status=status, permissions=bundle,
        )
    return _add


@pytest.fixture
def org(user):
    """Organization created by ``user``, who is its admin."""
    return organizations.create_organization(user, 'Riga Clinic', 'Family practice')


@pytest.fixture
def individual(user):
    return Scope.individual(user)


@pytest.fixture
def org_scope(user, org):
    return Scope.organization(user, org.id)


@pytest.fixture
def api(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client
