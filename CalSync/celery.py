import os

from celery import Celery
from celery.schedules import crontab

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "CalSync.settings")

app = Celery("CalSync")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()

app.conf.beat_schedule = {
    "batch-sync-every-15-min": {
        "task": "calendars.tasks.run_batch_sync_task",
        "schedule": 900,
    },
    "renew-webhook-channels-daily": {
        "task": "webhooks.tasks.renew_expiring_channels_task",
        "schedule": crontab(hour=3, minute=0),
    },
    "refresh-expiring-credentials": {
        "task": "accounts.tasks.refresh_expiring_credentials",
        "schedule": 600,
    },
    "dispatch-event-reminders-every-5-min": {
        "task": "notifications.tasks.dispatch_due_reminders_task",
        "schedule": 300,
    },
    "send-daily-digests-hourly": {
        "task": "notifications.tasks.send_daily_digests_task",
        "schedule": crontab(minute=0),
    },
    "prune-sync-history-daily": {
        "task": "calendars.tasks.prune_sync_history_task",
        "schedule": crontab(hour=4, minute=30),
    },
}
