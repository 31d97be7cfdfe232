"""
Client for the external AI diagnosis workflow.

The workflow is an opaque webhook: we POST the intake as JSON and get a
diagnosis back.  Anything other than a 2xx response carrying JSON is an
:class:`~clinic.exceptions.ExternalServiceError`.  No retries are made.
"""
from __future__ import annotations

import json
import logging
import re
import math
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Optional

import requests
from django.conf import settings

from clinic.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = Decimal('0.85')
SEVERITY_LEVELS = ('low', 'moderate', 'high', 'critical')
SEVERITY_ALIASES = {
    'medium': 'moderate',
    'mild': 'low',
    'minor': 'low',
    'severe': 'high',
    'urgent': 'high',
    'emergency': 'critical',
}

_JSON_BLOCK = re.compile(r'```(?:json)?\s*(.*?)```', re.DOTALL)


@dataclass
class DiagnosisResult:
    primary_diagnosis: str
    differential_diagnoses: list = field(default_factory=list)
    recommended_actions: list = field(default_factory=list)
    treatment: list = field(default_factory=list)
    drug_suggestions: list = field(default_factory=list)
    inventory_drugs: list = field(default_factory=list)
    additional_therapy: list = field(default_factory=list)
    improved_patient_history: str = ''
    severity_level: str = 'moderate'
    confidence_score: Decimal = DEFAULT_CONFIDENCE
    workflow_id: str = ''

    def as_fields(self) -> dict:
        return asdict(self)


def call_webhook(payload: dict) -> Any:
    """POST ``payload`` to the diagnosis webhook and return the decoded JSON body."""
    url = settings.DIAGNOSIS_WEBHOOK_URL
    if not url:
        raise ExternalServiceError('Diagnosis webhook URL not configured')
    try:
        r = requests.post(url, json=payload, timeout=settings.DIAGNOSIS_WEBHOOK_TIMEOUT)
    except requests.RequestException as exc:
        logger.warning('diagnosis webhook unreachable: %s', exc)
        raise ExternalServiceError(f'Diagnosis webhook unreachable: {exc}') from exc
    if not r.ok:
        logger.warning('diagnosis webhook answered %s', r.status_code)
        raise ExternalServiceError(
            f'Diagnosis request failed: status {r.status_code} {r.reason}. Response: {r.text[:500]}'
        )
    try:
        return r.json()
    except ValueError as exc:
        logger.warning('diagnosis webhook returned a non-JSON body (%s bytes)', len(r.content or b''))
        raise ExternalServiceError('Diagnosis webhook returned invalid JSON') from exc


def _json_from_text(text: str) -> dict:
    match = _JSON_BLOCK.search(text)
    candidate = match.group(1) if match else text
    try:
        data = json.loads(candidate.strip())
    except ValueError as exc:
        raise ExternalServiceError('Diagnosis result text does not contain valid JSON') from exc
    if not isinstance(data, dict):
        raise ExternalServiceError('Diagnosis result has an unexpected format')
    return data


def unwrap_response(data: Any) -> dict:
    """Reduce the shapes the workflow answers with to one result object.

    Accepted: a direct object, an object whose ``text`` holds the result
    (optionally inside a fenced json block), or a list whose first item is
    either of those.
    """
    if isinstance(data, list):
        if not data:
            raise ExternalServiceError('Diagnosis webhook returned an empty result')
        data = data[0]
    if not isinstance(data, dict):
        raise ExternalServiceError('Diagnosis result has an unexpected format')
    if 'primary_diagnosis' not in data and isinstance(data.get('text'), str):
        data = _json_from_text(data['text'])
    if not data.get('primary_diagnosis'):
        raise ExternalServiceError('Diagnosis result is missing primary_diagnosis')
    return data


def _as_list(value) -> list:
    if isinstance(value, list):
        return [v for v in value if v not in (None, '')]
    if isinstance(value, str):
        return [part.strip() for part in re.split(r'[,\n]', value) if part.strip()]
    return []


def _severity(data: dict) -> str:
    given = str(data.get('severity_level') or '').strip().lower()
    if given in SEVERITY_LEVELS:
        return given
    if given in SEVERITY_ALIASES:
        return SEVERITY_ALIASES[given]
    text = json.dumps(data, default=str).lower()
    if any(word in text for word in ('critical', 'emergency', 'immediate')):
        return 'critical'
    if any(word in text for word in ('severe', 'urgent')):
        return 'high'
    if any(word in text for word in ('mild', 'minor')):
        return 'low'
    return 'moderate'


def _confidence(value) -> Decimal:
    try:
        score = Decimal(str(value)) if value not in (None, '') else Decimal(0)
    except ArithmeticError:
        score = Decimal(0)
    if not score.is_finite() or not score:
        return DEFAULT_CONFIDENCE
    if score > 1:
        score = score / 100
    return min(max(score, Decimal(0)), Decimal(1)).quantize(Decimal('0.01'))


def parse_diagnosis_result(raw: Any) -> DiagnosisResult:
    data = json_safe(unwrap_response(raw))
    return DiagnosisResult(
        primary_diagnosis=str(data['primary_diagnosis']).strip(),
        differential_diagnoses=_as_list(data.get('differential_diagnoses')),
        recommended_actions=_as_list(data.get('recommended_actions')),
        treatment=_as_list(data.get('treatment')),
        drug_suggestions=data.get('drug_suggestions') or [],
        inventory_drugs=_as_list(data.get('inventory_drugs')),
        additional_therapy=data.get('additional_therapy') or [],
        improved_patient_history=data.get('improved_patient_history') or '',
        severity_level=_severity(data),
        confidence_score=_confidence(data.get('confidence_score')),
        workflow_id=str(data.get('workflow_id') or data.get('executionId') or ''),
    )


def json_safe(value: Any) -> Any:
    """Replace NaN and infinities, which JSON columns refuse, with ``None``."""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [json_safe(v) for v in value]
    return value


def request_diagnosis(payload: dict) -> tuple[DiagnosisResult, Any]:
    """Send an intake to the workflow; returns the parsed result and the raw body."""
    raw = call_webhook(payload)
    return parse_diagnosis_result(raw), json_safe(raw)


def proxy(payload: Optional[dict]) -> Any:
    return json_safe(call_webhook(payload or {}))
