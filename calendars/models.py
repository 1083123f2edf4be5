from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from accounts.models import ConnectedAccount
from common.choices import SyncTrigger
from common.models import BaseModel
from common.utils import resolve_zone


class Calendar(BaseModel):
    account = models.ForeignKey(ConnectedAccount, on_delete=models.CASCADE, related_name="calendars")
    provider_calendar_id = models.CharField(max_length=255)
    name = models.CharField(max_length=255, blank=True)
    color = models.CharField(max_length=32, blank=True)
    timezone = models.CharField(max_length=64, blank=True)
    is_primary = models.BooleanField(default=False)
    sync_enabled = models.BooleanField(default=True)
    last_synced_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        unique_together = ("account", "provider_calendar_id")
        ordering = ("-is_primary", "name")

    def __str__(self):
        return f"{self.name or self.provider_calendar_id} ({self.account_id})"

    @property
    def tzinfo(self):
        return resolve_zone(self.timezone)


class EventQuerySet(models.QuerySet):
    def active(self):
        return self.filter(status=Event.Status.CONFIRMED)

    def in_window(self, start, end):
        """Events overlapping ``[start, end)``."""
        return self.filter(start__lt=end, end__gt=start)


class Event(BaseModel):
    class Status(models.TextChoices):
        CONFIRMED = 'confirmed', _('Confirmed')
        CANCELLED = 'cancelled', _('Cancelled')

    calendar = models.ForeignKey(Calendar, on_delete=models.CASCADE, related_name="events")
    provider_event_id = models.CharField(max_length=255)
    title = models.CharField(max_length=500, blank=True)
    description = models.TextField(blank=True)
    location = models.CharField(max_length=500, blank=True)
    start = models.DateTimeField()
    end = models.DateTimeField()
    is_all_day = models.BooleanField(default=False)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.CONFIRMED)
    provider_updated_at = models.DateTimeField(null=True, blank=True)
    synced_at = models.DateTimeField(null=True, blank=True)
    local_modified_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    reminder_sent_at = models.DateTimeField(null=True, blank=True)

    objects = EventQuerySet.as_manager()

    class Meta:
        unique_together = ("calendar", "provider_event_id")
        ordering = ("start",)
        indexes = [
            models.Index(fields=["calendar", "start"], name="event_calendar_start_idx"),
            models.Index(fields=["status", "start"], name="event_status_start_idx"),
        ]

    def __str__(self):
        return f"{self.title or self.provider_event_id} @ {self.start:%Y-%m-%d %H:%M}"

    @property
    def is_cancelled(self):
        return self.status == self.Status.CANCELLED

    def mark_cancelled(self, when=None):
        self.status = self.Status.CANCELLED
        self.cancelled_at = when or timezone.now()

    def covers_date(self, day):
        """True when an all-day event spans ``day`` in its calendar's timezone."""
        zone = self.calendar.tzinfo
        return self.start.astimezone(zone).date() <= day < self.end.astimezone(zone).date()


class SyncJob(models.Model):
    """Audit record of one reconciliation run for an account."""

    class Status(models.TextChoices):
        RUNNING = 'running', _('Running')
        SUCCEEDED = 'succeeded', _('Succeeded')
        PARTIAL = 'partial', _('Partial')
        FAILED = 'failed', _('Failed')
        ABORTED = 'aborted', _('Aborted')
        COALESCED = 'coalesced', _('Coalesced')

    account = models.ForeignKey(ConnectedAccount, on_delete=models.CASCADE, related_name="sync_jobs")
    trigger = models.CharField(max_length=20, choices=SyncTrigger.choices)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.RUNNING)
    calendars_updated = models.PositiveIntegerField(default=0)
    events_upserted = models.PositiveIntegerField(default=0)
    events_created = models.PositiveIntegerField(default=0)
    events_updated = models.PositiveIntegerField(default=0)
    events_cancelled = models.PositiveIntegerField(default=0)
    conflicts = models.PositiveIntegerField(default=0)
    errors = models.JSONField(default=list, blank=True)
    started_at = models.DateTimeField(default=timezone.now)
    finished_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ("-started_at",)
        indexes = [
            models.Index(fields=["account", "-started_at"], name="syncjob_account_started_idx"),
        ]

    def __str__(self):
        return f"SyncJob {self.pk} ({self.trigger}) {self.status}"

    @property
    def duration(self):
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at
