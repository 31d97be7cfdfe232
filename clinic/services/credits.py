"""
Diagnosis credits.

Every AI diagnosis costs one credit, free credits before paid ones.
Global admins are never charged.  A balance is opened with
``FREE_DIAGNOSIS_CREDITS`` free credits the first time it is needed (at
sign-up for new accounts) and no user may run more than
``DAILY_DIAGNOSIS_LIMIT`` diagnoses per calendar day.  Each balance
change is appended to :class:`clinic.models.CreditTransaction`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from clinic.exceptions import (
    AuthorizationError,
    DailyLimitError,
    InsufficientCreditsError,
    NotFoundError,
    ValidationError,
)
from clinic.models import CreditTransaction, User, UserCredits
from clinic.services.audit import log_action
from clinic.services.permissions import is_global_admin

logger = logging.getLogger(__name__)

FREE = 'free'
PAID = 'paid'


@dataclass(frozen=True)
class CreditStatus:
    can_use: bool
    reason: str
    credits: int
    free_credits: int
    is_admin: bool

    def as_dict(self) -> dict:
        return {
            'canUse': self.can_use,
            'reason': self.reason,
            'credits': self.credits,
            'freeCredits': self.free_credits,
            'isAdmin': self.is_admin,
        }


def daily_limit() -> int:
    return getattr(settings, 'DAILY_DIAGNOSIS_LIMIT', 10)


def credits_for(user) -> UserCredits:
    """The user's balance, opened with the free allowance when missing."""
    balance, created = UserCredits.objects.get_or_create(user=user)
    if created:
        logger.info('credit balance opened for user %s with %s free credits', user.pk, balance.free_credits)
    return balance


def _roll_day(balance: UserCredits) -> None:
    today = timezone.localdate()
    if balance.last_reset_date != today:
        balance.daily_usage = 0
        balance.last_reset_date = today


def _limit_message(limit: int) -> str:
    return f'Daily limit reached ({limit} diagnoses per day)'


def can_use_diagnosis(user) -> CreditStatus:
    if is_global_admin(user):
        return CreditStatus(True, 'Admin access', 0, 0, True)
    balance = credits_for(user)
    _roll_day(balance)
    limit = daily_limit()
    if balance.daily_usage >= limit:
        return CreditStatus(False, _limit_message(limit), balance.credits, balance.free_credits, False)
    if balance.available <= 0:
        return CreditStatus(False, InsufficientCreditsError.default_detail,
                            balance.credits, balance.free_credits, False)
    return CreditStatus(True, 'Credits available', balance.credits, balance.free_credits, False)


def use_credit(user) -> Optional[str]:
    """Charge one diagnosis to ``user``.

    Returns the bucket that paid (``'free'`` or ``'paid'``) so the charge
    can be refunded, or ``None`` for admins, who are not charged.  Raises
    :class:`DailyLimitError` or :class:`InsufficientCreditsError` and
    leaves the balance untouched when the diagnosis is not allowed.
    """
    if is_global_admin(user):
        return None
    credits_for(user)
    with transaction.atomic():
        balance = UserCredits.objects.select_for_update().get(user=user)
        _roll_day(balance)
        limit = daily_limit()
        if balance.daily_usage >= limit:
            raise DailyLimitError(_limit_message(limit))
        if balance.free_credits > 0:
            balance.free_credits -= 1
            bucket = FREE
        elif balance.credits > 0:
            balance.credits -= 1
            bucket = PAID
        else:
            raise InsufficientCreditsError()
        balance.total_used += 1
        balance.daily_usage += 1
        balance.last_used_at = timezone.now()
        balance.save()
        CreditTransaction.objects.create(user=user, type='usage', amount=-1, description='Diagnosis usage')
    return bucket


def refund_credit(user, bucket: Optional[str], description: str = 'Diagnosis failed') -> None:
    if bucket is None:
        return
    with transaction.atomic():
        balance = UserCredits.objects.select_for_update().get(user=user)
        if bucket == FREE:
            balance.free_credits += 1
        else:
            balance.credits += 1
        balance.total_used = max(balance.total_used - 1, 0)
        balance.daily_usage = max(balance.daily_usage - 1, 0)
        balance.save()
        CreditTransaction.objects.create(user=user, type='refund', amount=1, description=description)
    logger.info('diagnosis credit refunded to user %s', user.pk)


def grant_credits(actor, user_id, amount, description: str = '') -> UserCredits:
    if not is_global_admin(actor):
        raise AuthorizationError('Administrator access required')
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError('Amount must be a positive whole number')
    target = User.objects.filter(pk=user_id).first()
    if target is None:
        raise NotFoundError('User not found')
    credits_for(target)
    with transaction.atomic():
        balance = UserCredits.objects.select_for_update().get(user=target)
        balance.credits += amount
        balance.save(update_fields=['credits', 'updated_at'])
        CreditTransaction.objects.create(
            user=target, type='admin_grant', amount=amount, admin=actor,
            description=(description or '').strip() or 'Admin granted credits',
        )
    log_action(user=actor, action='credits_grant', object_type='user', object_id=target.pk,
               detail={'amount': amount})
    return balance


def list_transactions(user, limit: int = 50):
    return CreditTransaction.objects.filter(user=user).select_related('admin')[:limit]
