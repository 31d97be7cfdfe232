from decimal import Decimal

import pytest
import requests

from clinic.exceptions import AuthorizationError, ExternalServiceError, NotFoundError, ValidationError
from clinic.models import Diagnosis, Patient
from clinic.services import diagnosis as diagnosis_service
from clinic.services import inventory, webhook
from clinic.services.context import Scope

pytestmark = pytest.mark.django_db

WEBHOOK_URL = 'https://workflow.example.com/webhook/diagnosis'


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self.reason = 'OK' if self.ok else 'Server Error'
        self._body = body
        self.text = text if text is not None else ''
        self.content = self.text.encode()

    def json(self):
        if self._body is None:
            raise ValueError('no json')
        return self._body


@pytest.fixture
def webhook_url(settings):
    settings.DIAGNOSIS_WEBHOOK_URL = WEBHOOK_URL
    return WEBHOOK_URL


@pytest.fixture
def answer(monkeypatch, webhook_url):
    """Make the workflow answer with the given response; returns the captured calls."""
    calls = []

    def _answer(response):
        def fake_post(url, json=None, timeout=None):
            calls.append({'url': url, 'json': json, 'timeout': timeout})
            if isinstance(response, Exception):
                raise response
            return response
        monkeypatch.setattr(webhook.requests, 'post', fake_post)
        return calls
    return _answer


INTAKE = {
    'patient_name': 'Jānis',
    'patient_surname': 'Bērziņš',
    'patient_age': 42,
    'patient_gender': 'male',
    'complaint': 'Stipras galvassāpes un drudzis',
    'symptoms': ['headache', 'fever'],
    'pain_scale': 7,
}


def test_submit_stores_result_and_links_patient(user, individual, answer):
    inventory.create_drug(individual, user, {'drug_name': 'Paracetamol', 'stock_quantity': 20})
    calls = answer(FakeResponse(body=[{
        'primary_diagnosis': 'Tension headache',
        'differential_diagnoses': 'Migraine, Sinusitis',
        'severity_level': 'Medium',
        'confidence_score': 90,
        'inventory_drugs': [{'drug_name': 'paracetamol', 'dosage': '500mg'}],
    }]))

    dx = diagnosis_service.submit_diagnosis(individual, user, dict(INTAKE))

    assert dx.primary_diagnosis == 'Tension headache'
    assert dx.differential_diagnoses == ['Migraine', 'Sinusitis']
    assert dx.severity_level == 'moderate'
    assert dx.confidence_score == Decimal('0.90')
    assert dx.patient.patient_name == 'Jānis'
    assert dx.patient.last_diagnosis_id == dx.pk

    sent = calls[0]['json']
    assert calls[0]['url'] == WEBHOOK_URL
    assert sent['detected_language'] == 'latvian'
    assert sent['current_mode'] == 'individual'
    assert sent['has_drug_inventory'] is True
    assert 'Paracetamol' in sent['user_drug_inventory']

    suggestion = dx.drug_suggestion_rows.get()
    assert suggestion.drug.drug_name == 'Paracetamol'
    assert suggestion.suggested_dosage == '500mg'


def test_second_submission_reuses_patient(user, individual, answer):
    answer(FakeResponse(body={'primary_diagnosis': 'Flu'}))
    first = diagnosis_service.submit_diagnosis(individual, user, dict(INTAKE))
    second = diagnosis_service.submit_diagnosis(individual, user, dict(INTAKE))
    assert first.patient_id == second.patient_id
    assert Patient.objects.count() == 1


def test_text_wrapped_result(user, individual, answer):
    answer(FakeResponse(body={'text': '```json\n{"primary_diagnosis": "Otitis media"}\n```'}))
    dx = diagnosis_service.submit_diagnosis(individual, user, {'complaint': 'Ear ache'})
    assert dx.primary_diagnosis == 'Otitis media'
    assert dx.confidence_score == webhook.DEFAULT_CONFIDENCE
    # no name, no patient record
    assert dx.patient_id is None


@pytest.mark.parametrize('response', [
    FakeResponse(status_code=500, text='boom'),
    FakeResponse(text='<html>'),
    FakeResponse(body={'unexpected': True}),
    requests.ConnectionError('refused'),
])
def test_workflow_failure_keeps_intake(user, individual, answer, response):
    answer(response)
    with pytest.raises(ExternalServiceError):
        diagnosis_service.submit_diagnosis(individual, user, dict(INTAKE))
    dx = Diagnosis.objects.get()
    assert dx.complaint == INTAKE['complaint']
    assert dx.primary_diagnosis == ''


def test_missing_webhook_url(user, individual, settings):
    settings.DIAGNOSIS_WEBHOOK_URL = ''
    with pytest.raises(ExternalServiceError):
        diagnosis_service.submit_diagnosis(individual, user, {'complaint': 'Cough'})


def test_intake_validation(user, individual):
    with pytest.raises(ValidationError):
        diagnosis_service.create_diagnosis(individual, user, {'complaint': '   '})
    with pytest.raises(ValidationError):
        diagnosis_service.create_diagnosis(individual, user, {'complaint': 'Cough', 'pain_scale': 11})


def test_member_without_diagnose_flag(org, other_user, add_member):
    add_member(org, other_user, diagnose_patients=False)
    with pytest.raises(AuthorizationError):
        diagnosis_service.create_diagnosis(Scope.organization(other_user, org.id), other_user, {'complaint': 'Cough'})


def test_manual_edit_stamps_trail(user, individual):
    dx = diagnosis_service.create_diagnosis(individual, user, {'complaint': 'Cough'})
    edited = diagnosis_service.update_diagnosis(individual, user, dx.pk, {
        'primary_diagnosis': 'Bronchitis', 'workflow_id': 'forged',
    })
    assert edited.primary_diagnosis == 'Bronchitis'
    assert edited.workflow_id == ''
    assert edited.last_edited_by == user
    assert edited.last_edited_by_email == user.email
    assert edited.edit_location == diagnosis_service.DEFAULT_EDIT_LOCATION


def test_drug_suggestions(user, individual, org_scope):
    dx = diagnosis_service.create_diagnosis(individual, user, {'complaint': 'Cough'})
    drug = inventory.create_drug(individual, user, {'drug_name': 'ACC', 'stock_quantity': 3})
    suggestion = diagnosis_service.add_drug_suggestion(individual, user, dx.pk, drug_id=drug.pk, priority_level=2)
    assert suggestion.drug_name == 'ACC'
    assert suggestion.manual_selection is True
    assert list(diagnosis_service.list_drug_suggestions(individual, dx.pk)) == [suggestion]

    with pytest.raises(ValidationError):
        diagnosis_service.add_drug_suggestion(individual, user, dx.pk)
    with pytest.raises(NotFoundError):
        diagnosis_service.list_drug_suggestions(org_scope, dx.pk)

    diagnosis_service.remove_drug_suggestion(individual, user, dx.pk, suggestion.pk)
    with pytest.raises(NotFoundError):
        diagnosis_service.remove_drug_suggestion(individual, user, dx.pk, suggestion.pk)


@pytest.mark.parametrize('text,language', [
    ('Man sāp galva', 'latvian'),
    ('Болит голова', 'russian'),
    ('Starke Kopfschmerzen und Fieber', 'german'),
    ('Sore throat', 'english'),
])
def test_detect_language(text, language):
    assert diagnosis_service.detect_language(text) == language


@pytest.mark.parametrize('score', [float('nan'), float('inf'), 'NaN', None, 'high'])
def test_unusable_confidence_falls_back_to_default(score):
    result = webhook.parse_diagnosis_result({'primary_diagnosis': 'Flu', 'confidence_score': score})
    assert result.confidence_score == webhook.DEFAULT_CONFIDENCE


def test_nan_confidence_from_the_workflow(user, individual, answer):
    answer(FakeResponse(body={'primary_diagnosis': 'Flu', 'confidence_score': float('nan')}))
    dx = diagnosis_service.submit_diagnosis(individual, user, {'complaint': 'Fever'})
    assert dx.confidence_score == webhook.DEFAULT_CONFIDENCE
    assert dx.webhook_response == {'primary_diagnosis': 'Flu', 'confidence_score': None}


def test_inventory_drugs_given_as_text(user, individual, answer):
    inventory.create_drug(individual, user, {'drug_name': 'Paracetamol', 'stock_quantity': 5})
    inventory.create_drug(individual, user, {'drug_name': 'ACC', 'stock_quantity': 5})
    result = webhook.parse_diagnosis_result({'primary_diagnosis': 'Flu', 'inventory_drugs': 'Paracetamol, ACC'})
    assert result.inventory_drugs == ['Paracetamol', 'ACC']

    answer(FakeResponse(body={'primary_diagnosis': 'Flu', 'inventory_drugs': 'Paracetamol'}))
    dx = diagnosis_service.submit_diagnosis(individual, user, {'complaint': 'Fever'})
    assert [s.drug_name for s in dx.drug_suggestion_rows.all()] == ['Paracetamol']
