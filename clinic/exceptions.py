"""
Error taxonomy and the unified API exception handler.

Services raise the exceptions below; views never catch them.  The
handler configured in ``REST_FRAMEWORK['EXCEPTION_HANDLER']`` renders
every failure as ``{'ok': False, 'error': {'code': ..., 'message': ...}}``.
"""
from __future__ import annotations

import logging

from django.core.exceptions import PermissionDenied as DjangoPermissionDenied
from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.exceptions import ValidationError as DRFValidationError
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)


class DomainError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Request could not be completed.'
    default_code = 'error'


class AuthenticationError(DomainError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = 'Invalid email or password.'
    default_code = 'authentication_failed'


class AuthorizationError(DomainError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "You don't have permission to perform this action."
    default_code = 'permission_denied'


class NotAMemberError(AuthorizationError):
    default_detail = 'You are not a member of this organization.'
    default_code = 'not_a_member'


class MembershipSuspendedError(AuthorizationError):
    default_detail = 'Your membership in this organization is not active.'
    default_code = 'membership_suspended'


class NoMembershipError(AuthorizationError):
    default_detail = 'No membership found for this organization.'
    default_code = 'no_membership'


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Not found.'
    default_code = 'not_found'


class ValidationError(DomainError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Invalid input.'
    default_code = 'invalid'


class InsufficientStockError(DomainError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Insufficient stock quantity.'
    default_code = 'insufficient_stock'


class InvitationExpiredError(DomainError):
    status_code = status.HTTP_410_GONE
    default_detail = 'Invitation has expired.'
    default_code = 'expired'


class InsufficientCreditsError(DomainError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_detail = 'No credits available. Please purchase credits to continue.'
    default_code = 'insufficient_credits'


class DailyLimitError(DomainError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_detail = 'Daily diagnosis limit reached.'
    default_code = 'daily_limit_reached'


class ExternalServiceError(DomainError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = 'External service request failed.'
    default_code = 'external_service_error'


class DataAccessError(DomainError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = 'Data access failed.'
    default_code = 'data_access_error'

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        # the cause is logged by the handler and never rendered
        super().__init__(f"{operation} failed")


def _first_code(codes) -> str:
    if isinstance(codes, str):
        return codes
    if isinstance(codes, dict):
        for value in codes.values():
            return _first_code(value)
    if isinstance(codes, (list, tuple)) and codes:
        return _first_code(codes[0])
    return 'error'


def api_exception_handler(exc, context):
    resp = drf_exception_handler(exc, context)
    if resp is None:
        logger.exception('unhandled error in %s', context.get('view'), exc_info=exc)
        return Response({'ok': False, 'error': {'code': 'server_error', 'message': 'Internal server error'}}, status=500)
    # normalize response
    if isinstance(exc, DRFValidationError):
        code = 'invalid'
    elif isinstance(exc, APIException):
        code = _first_code(exc.get_codes())
    elif isinstance(exc, Http404):
        code = 'not_found'
    elif isinstance(exc, DjangoPermissionDenied):
        code = 'permission_denied'
    else:
        code = 'api_error'
    if isinstance(resp.data, dict) and 'detail' in resp.data:
        message = resp.data['detail']
    else:
        message = resp.data
    if isinstance(exc, DataAccessError):
        logger.error('data access failure during %s: %r', exc.operation, exc.cause)
    return Response({'ok': False, 'error': {'code': code, 'message': message}}, status=resp.status_code)
