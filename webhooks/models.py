from django.db import models
from django.utils import timezone

from calendars.models import Calendar
from common.fields import EncryptedTextField
from common.models import BaseModel


class WebhookChannel(BaseModel):
    """The single push-notification registration of a calendar."""

    calendar = models.OneToOneField(Calendar, on_delete=models.CASCADE, related_name="webhook_channel")
    channel_id = models.CharField(max_length=64, unique=True)
    resource_id = models.CharField(max_length=255)
    resource_uri = models.TextField(blank=True)
    token = EncryptedTextField()
    expires_at = models.DateTimeField(null=True, blank=True)
    handshake_received_at = models.DateTimeField(null=True, blank=True)
    last_message_number = models.BigIntegerField(null=True, blank=True)
    last_notified_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ("expires_at",)

    def __str__(self):
        return f"Channel {self.channel_id} for calendar {self.calendar_id}"

    @property
    def is_expired(self):
        return bool(self.expires_at and self.expires_at <= timezone.now())

    def expires_within(self, window):
        return self.expires_at is None or self.expires_at <= timezone.now() + window
