from datetime import datetime, time

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models

from common.models import BaseModel
from common.utils import resolve_zone


class Notification(BaseModel):
    """
    In-app record of every alert sent to a user.
    """

    class Type(models.TextChoices):
        GENERAL = "general", "General"
        DAILY_DIGEST = "daily_digest", "Daily Digest"
        EVENT_REMINDER = "event_reminder", "Event Reminder"
        RECONNECT_REQUIRED = "reconnect_required", "Reconnect Required"

    class Status(models.TextChoices):
        UNREAD = "unread", "Unread"
        READ = "read", "Read"

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="notifications")
    title = models.CharField(max_length=200)
    message = models.TextField()
    type = models.CharField(max_length=50, choices=Type.choices, default=Type.GENERAL)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.UNREAD)
    payload = models.JSONField(default=dict, blank=True)
    pushed = models.BooleanField(default=False)

    class Meta:
        ordering = ("-created_at",)
        indexes = [
            models.Index(fields=["user", "status"], name="notification_user_status_idx"),
        ]

    def __str__(self):
        return f"{self.user_id} - {self.title}"


class NotificationPreference(BaseModel):
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="notification_preference",
    )
    push_enabled = models.BooleanField(default=True)
    daily_digest_enabled = models.BooleanField(default=True)
    digest_hour = models.PositiveSmallIntegerField(default=7, validators=[MaxValueValidator(23)])
    event_reminders_enabled = models.BooleanField(default=True)
    reminder_lead_minutes = models.PositiveIntegerField(
        default=15,
        validators=[MinValueValidator(1), MaxValueValidator(24 * 60)],
    )
    quiet_hours_start = models.TimeField(null=True, blank=True)
    quiet_hours_end = models.TimeField(null=True, blank=True)
    timezone = models.CharField(max_length=64, default="UTC")
    last_digest_sent_on = models.DateField(null=True, blank=True)

    def __str__(self):
        return f"Preferences for {self.user_id}"

    @classmethod
    def for_user(cls, user):
        preference, _ = cls.objects.get_or_create(user=user)
        return preference

    @property
    def tzinfo(self):
        return resolve_zone(self.timezone)

    def local_now(self, now: datetime) -> datetime:
        return now.astimezone(self.tzinfo)

    def in_quiet_hours(self, now: datetime) -> bool:
        """Quiet hours may wrap midnight (e.g. 22:00-07:00)."""
        if self.quiet_hours_start is None or self.quiet_hours_end is None:
            return False
        if self.quiet_hours_start == self.quiet_hours_end:
            return False
        current: time = self.local_now(now).time()
        start, end = self.quiet_hours_start, self.quiet_hours_end
        if start < end:
            return start <= current < end
        return current >= start or current < end


class PushToken(BaseModel):
    class Platform(models.TextChoices):
        IOS = "ios", "iOS"
        ANDROID = "android", "Android"
        WEB = "web", "Web"

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="push_tokens")
    token = models.CharField(max_length=255)
    platform = models.CharField(max_length=10, choices=Platform.choices)
    last_used_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        unique_together = ("user", "token")
        ordering = ("-created_at",)

    def __str__(self):
        return f"{self.platform} token for {self.user_id}"
