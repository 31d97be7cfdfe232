"""
Context-scoped data access.

Patients, diagnoses, drug inventory and the dispensing ledger live in
one table each, owned by either a user or an organization.  Every read
goes through :func:`scoped_queryset`, which narrows the table to the
owner the active :class:`~clinic.services.context.Scope` stands for, and
every create stamps that owner itself.  Callers cannot pick or change
the owner of a row.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterable, Optional

from django.core.exceptions import FieldDoesNotExist
from django.db import DatabaseError, transaction

from clinic.exceptions import DataAccessError, NotFoundError, ValidationError
from clinic.models import Diagnosis, Drug, DrugUsage, Patient
from clinic.services.events import publish_refresh

logger = logging.getLogger(__name__)

FAMILIES = {
    'patients': Patient,
    'diagnoses': Diagnosis,
    'drugs': Drug,
    'usage': DrugUsage,
}

LABELS = {
    'patients': 'Patient',
    'diagnoses': 'Diagnosis',
    'drugs': 'Drug',
    'usage': 'Usage record',
}

OWNER_FIELDS = {'owner_user', 'owner_user_id', 'organization', 'organization_id', 'id', 'pk'}
APPEND_ONLY = {'usage'}


def model_for(family: str):
    try:
        return FAMILIES[family]
    except KeyError:
        raise ValueError(f'unknown record family: {family}') from None


def _has_field(model, name: str) -> bool:
    try:
        model._meta.get_field(name)
    except FieldDoesNotExist:
        return False
    return True


def _strip_owner(payload: Optional[dict]) -> dict:
    return {k: v for k, v in (payload or {}).items() if k not in OWNER_FIELDS}


@contextmanager
def write_guard(operation: str):
    """Run a write atomically and report store failures as ``DataAccessError``."""
    try:
        with transaction.atomic():
            yield
    except DatabaseError as exc:
        logger.warning('%s rejected by the database: %s', operation, exc)
        raise DataAccessError(operation, exc) from exc


def scoped_queryset(family: str, scope):
    return model_for(family).objects.filter(**scope.owner_filter())


def list_records(family: str, scope, *, filters: Optional[dict] = None,
                 order_by: Optional[Iterable[str]] = None):
    qs = scoped_queryset(family, scope)
    if filters:
        qs = qs.filter(**filters)
    if order_by:
        qs = qs.order_by(*order_by)
    return qs


def get_record(family: str, scope, pk: Any, *, for_update: bool = False):
    qs = scoped_queryset(family, scope)
    if for_update:
        qs = qs.select_for_update()
    obj = qs.filter(pk=pk).first()
    if obj is None:
        raise NotFoundError(f'{LABELS[family]} not found')
    return obj


def create_record(family: str, scope, payload: dict, *, actor=None):
    model = model_for(family)
    data = _strip_owner(payload)
    with write_guard(f'create {family}'):
        obj = model(**data, **scope.owner_values())
        if actor is not None and _has_field(model, 'created_by') and 'created_by' not in data:
            obj.created_by = actor
        obj.save()
    publish_refresh(scope, family, 'created', obj.pk)
    return obj


def update_record(family: str, scope, pk: Any, changes: dict, *, actor=None):
    if family in APPEND_ONLY:
        raise ValidationError(f'{LABELS[family]} entries cannot be modified')
    model = model_for(family)
    with write_guard(f'update {family}'):
        obj = get_record(family, scope, pk, for_update=True)
        for field, value in _strip_owner(changes).items():
            setattr(obj, field, value)
        if actor is not None and _has_field(model, 'updated_by'):
            obj.updated_by = actor
        obj.save()
    publish_refresh(scope, family, 'updated', obj.pk)
    return obj


def delete_record(family: str, scope, pk: Any) -> None:
    if family in APPEND_ONLY:
        raise ValidationError(f'{LABELS[family]} entries cannot be deleted')
    with write_guard(f'delete {family}'):
        obj = get_record(family, scope, pk, for_update=True)
        obj.delete()
    publish_refresh(scope, family, 'deleted', pk)
