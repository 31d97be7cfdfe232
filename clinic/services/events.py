"""
Refresh signals for connected clients.

Every write against a scoped record family publishes a ``data.refresh``
event to the channel group of the owning context once the surrounding
transaction commits.  Clients subscribe through
:class:`clinic.realtime.consumers.UpdatesConsumer`.
"""
from __future__ import annotations

from typing import Any, Optional

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.db import transaction
from django.utils import timezone


def user_group(user_id) -> str:
    return f"user.{user_id}"


def organization_group(organization_id) -> str:
    return f"org.{organization_id}"


def group_for_scope(scope) -> str:
    if scope.is_organization:
        return organization_group(scope.organization_id)
    return user_group(scope.user_id)


def send_event(group: str, payload: dict[str, Any]) -> None:
    channel_layer = get_channel_layer()
    if channel_layer is not None:
        async_to_sync(channel_layer.group_send)(group, payload)


def publish_refresh(scope, family: str, action: str, object_id: Optional[Any] = None) -> None:
    """Queue a refresh event for ``family`` in the scope's group after commit."""
    payload = {
        "type": "data.refresh",
        "family": family,
        "action": action,
        "id": object_id,
        "mode": scope.mode,
        "ts": timezone.now().isoformat(),
    }
    group = group_for_scope(scope)
    transaction.on_commit(lambda: send_event(group, payload))


def publish_membership_change(user_id, organization_id, action: str) -> None:
    """Tell a user's sessions that their set of eligible contexts changed."""
    payload = {
        "type": "membership.changed",
        "organization": organization_id,
        "action": action,
        "ts": timezone.now().isoformat(),
    }
    group = user_group(user_id)
    transaction.on_commit(lambda: send_event(group, payload))
