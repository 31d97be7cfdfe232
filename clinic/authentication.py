"""
Token authentication for the API.

API clients send ``Authorization: Token <key>`` with the key returned by
sign-in; JWT access tokens are accepted as well (see
``REST_FRAMEWORK['DEFAULT_AUTHENTICATION_CLASSES']``).
"""
from __future__ import annotations

from rest_framework import authentication, exceptions


class TokenAuthentication(authentication.TokenAuthentication):
    """DRF token authentication that also refuses unverified accounts."""

    keyword = 'Token'

    def authenticate_credentials(self, key):
        user, token = super().authenticate_credentials(key)
        if not user.email_verified:
            raise exceptions.AuthenticationFailed('Email not confirmed')
        return user, token
