import json
import logging

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncWebsocketConsumer

from .models import Notification

logger = logging.getLogger(__name__)


class NotificationConsumer(AsyncWebsocketConsumer):
    """Live feed of a user's in-app notifications.

    Clients receive ``{"type": "unread_count", ...}`` on connect and every
    new notification as it is stored. Sending ``{"action": "mark_read",
    "id": <pk>}`` marks one notification read.
    """

    group_name = None

    async def connect(self):
        user = self.scope.get("user")
        if not user or user.is_anonymous:
            await self.close()
            return

        self.user_id = user.pk
        self.group_name = f"notifications_{user.pk}"
        try:
            await self.channel_layer.group_add(self.group_name, self.channel_name)
        except Exception:
            logger.exception("Joining %s failed", self.group_name)
            await self.close()
            return
        await self.accept()
        await self._send_json({"type": "unread_count", "count": await self._unread_count()})

    async def disconnect(self, close_code):
        if not self.group_name:
            return
        try:
            await self.channel_layer.group_discard(self.group_name, self.channel_name)
        except Exception:
            logger.exception("Leaving %s failed", self.group_name)

    async def receive(self, text_data=None, bytes_data=None):
        try:
            data = json.loads(text_data or "{}")
        except ValueError:
            await self._send_json({"type": "error", "detail": "Invalid JSON."})
            return

        if data.get("action") != "mark_read":
            await self._send_json({"type": "error", "detail": "Unknown action."})
            return
        updated = await self._mark_read(data.get("id"))
        await self._send_json({"type": "marked_read", "id": data.get("id"), "updated": bool(updated)})

    async def send_notification(self, event):
        await self._send_json({"type": "notification", "notification": event.get("message", {})})

    async def _send_json(self, payload):
        try:
            await self.send(text_data=json.dumps(payload))
        except Exception:
            logger.exception("Writing to notification socket for user %s failed", getattr(self, "user_id", None))

    @database_sync_to_async
    def _unread_count(self):
        return Notification.objects.filter(user_id=self.user_id, status=Notification.Status.UNREAD).count()

    @database_sync_to_async
    def _mark_read(self, notification_id):
        try:
            notification_id = int(notification_id)
        except (TypeError, ValueError):
            return 0
        return Notification.objects.filter(
            pk=notification_id,
            user_id=self.user_id,
            status=Notification.Status.UNREAD,
        ).update(status=Notification.Status.READ)
