import json

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncWebsocketConsumer

from clinic.services.context import resolve_mode
from clinic.services.events import organization_group, user_group


class UpdatesConsumer(AsyncWebsocketConsumer):
    """Pushes refresh signals for the user's own records and their active organization.

    Clients send ``{"type": "resync"}`` after switching context so the
    organization group follows the new choice.
    """

    async def connect(self):
        user = self.scope.get("user")
        if not (user and user.is_authenticated):
            await self.close(code=4401)
            return
        self.user = user
        self.groups_joined = set()
        await self._join_groups()
        await self.accept()
        await self.send(json.dumps({"type": "welcome", "groups": sorted(self.groups_joined)}))

    async def disconnect(self, close_code):
        for group in getattr(self, "groups_joined", ()):
            await self.channel_layer.group_discard(group, self.channel_name)

    async def receive(self, text_data=None, bytes_data=None):
        if not text_data:
            return
        try:
            message = json.loads(text_data)
        except ValueError:
            await self.send(json.dumps({"type": "error", "message": "invalid JSON"}))
            return
        kind = message.get("type") if isinstance(message, dict) else None
        if kind == "ping":
            await self.send(json.dumps({"type": "pong"}))
        elif kind == "resync":
            await self._join_groups()
            await self.send(json.dumps({"type": "resynced", "groups": sorted(self.groups_joined)}))

    async def _join_groups(self):
        info = await database_sync_to_async(resolve_mode)(self.user)
        wanted = {user_group(self.user.pk)}
        if info.scope.is_organization:
            wanted.add(organization_group(info.scope.organization_id))
        for group in self.groups_joined - wanted:
            await self.channel_layer.group_discard(group, self.channel_name)
        for group in wanted - self.groups_joined:
            await self.channel_layer.group_add(group, self.channel_name)
        self.groups_joined = wanted

    async def data_refresh(self, event):
        # event: {"type": "data.refresh", "family": ..., "action": ..., "id": ..., "mode": ..., "ts": ...}
        await self.send(json.dumps(event, default=str))

    async def membership_changed(self, event):
        await self._join_groups()
        await self.send(json.dumps(event, default=str))
