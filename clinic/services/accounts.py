"""
Sign-up, sign-in and email verification.

Accounts are created unverified, with a balance of free diagnosis
credits.  The verification link carries a signed, time-limited token
(``django.core.signing``) and password sign-in is refused until the
email has been confirmed.
"""
from __future__ import annotations

import logging
from typing import Optional

from django.conf import settings
from django.contrib.auth import authenticate
from django.contrib.auth.password_validation import validate_password
from django.core import signing
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.mail import send_mail
from django.core.validators import validate_email
from django.db import transaction
from rest_framework.authtoken.models import Token
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.token_blacklist.models import BlacklistedToken, OutstandingToken
from rest_framework_simplejwt.tokens import RefreshToken

from clinic.exceptions import AuthenticationError, NotFoundError, ValidationError
from clinic.models import User
from clinic.services.audit import log_action
from clinic.services.credits import credits_for

logger = logging.getLogger(__name__)

VERIFY_SALT = 'clinic.email-verification'
VERIFICATION_TYPES = ('signup',)


def _clean_email(email: Optional[str]) -> str:
    email = (email or '').strip().lower()
    try:
        validate_email(email)
    except DjangoValidationError:
        raise ValidationError('Enter a valid email address') from None
    return email


def verification_token(user: User) -> str:
    return signing.dumps({'uid': user.pk, 'email': user.email}, salt=VERIFY_SALT)


def verification_link(user: User) -> str:
    base = settings.FRONTEND_URL.rstrip('/')
    return f"{base}/auth/verify?token={verification_token(user)}"


def send_verification_email(user: User) -> None:
    send_mail(
        subject='Confirm your Dimedio account',
        message=(
            f"Hello {user.display_name()},\n\n"
            f"Confirm your email address by opening this link:\n{verification_link(user)}\n\n"
            "If you did not sign up, ignore this message."
        ),
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[user.email],
    )
    logger.info('verification email sent to user %s', user.pk)


def sign_up(email: str, password: str, metadata: Optional[dict] = None) -> User:
    email = _clean_email(email)
    metadata = metadata or {}
    full_name = str(metadata.get('full_name') or metadata.get('fullName') or '').strip()
    if User.objects.filter(email__iexact=email).exists():
        raise ValidationError('An account with this email already exists')
    candidate = User(username=email, email=email, full_name=full_name)
    try:
        validate_password(password, user=candidate)
    except DjangoValidationError as exc:
        raise ValidationError(' '.join(exc.messages)) from None
    with transaction.atomic():
        candidate.set_password(password)
        candidate.email_verified = False
        candidate.save()
        credits_for(candidate)
    log_action(user=candidate, action='sign_up', object_type='user', object_id=candidate.pk)
    send_verification_email(candidate)
    return candidate


def issue_tokens(user: User) -> dict:
    token_obj, _ = Token.objects.get_or_create(user=user)
    refresh = RefreshToken.for_user(user)
    return {
        'token': token_obj.key,
        'jwt_access': str(refresh.access_token),
        'jwt_refresh': str(refresh),
    }


def sign_in_with_password(email: str, password: str, request=None) -> tuple[User, dict]:
    email = (email or '').strip().lower()
    if not email or not password:
        raise AuthenticationError('Email and password are required')
    user = authenticate(request, username=email, password=password)
    if user is None:
        log_action(user=None, action='sign_in', object_type='user',
                   detail={'result': 'fail', 'email': email})
        raise AuthenticationError('Invalid email or password')
    if not user.email_verified:
        raise AuthenticationError('Email not confirmed')
    log_action(user=user, action='sign_in', object_type='user', object_id=user.pk, detail={'result': 'ok'})
    return user, issue_tokens(user)


def sign_out(user: User, refresh: Optional[str] = None) -> int:
    """Blacklist one refresh token, or every outstanding one, and drop the API token."""
    count = 0
    if refresh:
        try:
            RefreshToken(refresh).blacklist()
        except TokenError as exc:
            raise ValidationError(f'Invalid refresh token: {exc}') from None
        count = 1
    else:
        for outstanding in OutstandingToken.objects.filter(user=user):
            _, created = BlacklistedToken.objects.get_or_create(token=outstanding)
            count += int(created)
    Token.objects.filter(user=user).delete()
    log_action(user=user, action='sign_out', object_type='user', object_id=user.pk,
               detail={'blacklisted': count})
    return count


def resend(verification_type: str, email: str) -> None:
    """Re-send a verification message.  Unknown or verified addresses are ignored silently."""
    if verification_type not in VERIFICATION_TYPES:
        raise ValidationError(f'Unsupported verification type: {verification_type}')
    user = User.objects.filter(email__iexact=_clean_email(email)).first()
    if user is None or user.email_verified:
        return
    send_verification_email(user)


def verify_email(token: str) -> User:
    try:
        data = signing.loads(token or '', salt=VERIFY_SALT, max_age=settings.EMAIL_VERIFICATION_MAX_AGE)
    except signing.SignatureExpired:
        raise ValidationError('Verification link has expired') from None
    except signing.BadSignature:
        raise ValidationError('Verification link is invalid') from None
    user = User.objects.filter(pk=data.get('uid'), email__iexact=data.get('email', '')).first()
    if user is None:
        raise NotFoundError('User not found')
    if not user.email_verified:
        user.email_verified = True
        user.save(update_fields=['email_verified'])
        log_action(user=user, action='email_verified', object_type='user', object_id=user.pk)
    return user
