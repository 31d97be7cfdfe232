import pytest

from clinic.exceptions import InsufficientStockError
from clinic.services import events, inventory, organizations

pytestmark = pytest.mark.django_db


@pytest.fixture
def sent(monkeypatch):
    messages = []
    monkeypatch.setattr(events, 'send_event', lambda group, payload: messages.append((group, payload)))
    return messages


def test_individual_writes_refresh_the_user_group(user, individual, sent, django_capture_on_commit_callbacks):
    with django_capture_on_commit_callbacks(execute=True):
        drug = inventory.create_drug(individual, user, {'drug_name': 'Aspirin', 'stock_quantity': 2})
    assert sent == [(f'user.{user.pk}', {
        'type': 'data.refresh', 'family': 'drugs', 'action': 'created', 'id': drug.pk,
        'mode': 'individual', 'ts': sent[0][1]['ts'],
    })]


def test_organization_writes_refresh_the_organization_group(user, org, org_scope, sent,
                                                            django_capture_on_commit_callbacks):
    drug = inventory.create_drug(org_scope, user, {'drug_name': 'Aspirin', 'stock_quantity': 2})
    with django_capture_on_commit_callbacks(execute=True):
        inventory.record_usage(org_scope, user, drug.pk, 1)
    groups = {group for group, _ in sent}
    assert groups == {f'org.{org.id}'}
    assert {payload['family'] for _, payload in sent} == {'drugs', 'usage'}


def test_nothing_is_sent_for_a_rejected_write(user, individual, sent, django_capture_on_commit_callbacks):
    drug = inventory.create_drug(individual, user, {'drug_name': 'Aspirin', 'stock_quantity': 2})
    with django_capture_on_commit_callbacks(execute=True) as callbacks:
        with pytest.raises(InsufficientStockError):
            inventory.record_usage(individual, user, drug.pk, 3)
    assert callbacks == []


def test_membership_changes_reach_the_member(user, org, other_user, add_member, sent,
                                             django_capture_on_commit_callbacks):
    member = add_member(org, other_user)
    with django_capture_on_commit_callbacks(execute=True):
        organizations.remove_member(user, org.id, member.pk)
    assert sent[0][0] == f'user.{other_user.pk}'
    assert sent[0][1]['type'] == 'membership.changed'
    assert sent[0][1]['action'] == 'removed'
