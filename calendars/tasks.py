"""Celery tasks for the calendars app."""

import logging
from datetime import timedelta
from typing import Optional

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from calendars.models import Event, SyncJob
from calendars.services.pipeline import run_account_pipeline
from calendars.services.scheduler import run_batch_sync
from calendars.services.triggers import clear_pending
from common.choices import SyncTrigger

logger = logging.getLogger(__name__)


@shared_task(name="calendars.tasks.sync_account_task")
def sync_account_task(account_id: int, trigger: str = SyncTrigger.MANUAL) -> dict:
    """Run the sync pipeline for one account and return a JSON-friendly summary."""

    clear_pending(account_id)
    result = run_account_pipeline(account_id, trigger)
    return {
        "account_id": account_id,
        "job_id": result.job_id,
        "status": str(result.status),
        "calendars_updated": result.calendars_updated,
        "events_upserted": result.events_upserted,
        "conflicts": len(result.conflicts),
        "errors": result.errors,
    }


@shared_task(name="calendars.tasks.run_batch_sync_task")
def run_batch_sync_task(batch_size: Optional[int] = None, delay: Optional[float] = None) -> dict:
    """Schedule-friendly wrapper around ``run_batch_sync``."""

    return run_batch_sync(batch_size=batch_size, delay=delay)


@shared_task(name="calendars.tasks.prune_sync_history_task")
def prune_sync_history_task() -> dict:
    """Delete old sync jobs and cancelled-event tombstones past retention."""

    now = timezone.now()
    job_cutoff = now - timedelta(days=getattr(settings, "SYNC_JOB_RETENTION_DAYS", 14))
    tombstone_cutoff = now - timedelta(days=getattr(settings, "CALENDAR_TOMBSTONE_RETENTION_DAYS", 30))

    jobs_deleted, _ = SyncJob.objects.filter(started_at__lt=job_cutoff).exclude(
        status=SyncJob.Status.RUNNING
    ).delete()
    events_deleted, _ = Event.objects.filter(
        status=Event.Status.CANCELLED,
        cancelled_at__lt=tombstone_cutoff,
    ).delete()

    summary = {"sync_jobs": jobs_deleted, "events": events_deleted}
    logger.info("Pruned sync history: %s", summary)
    return summary


__all__ = [
    "prune_sync_history_task",
    "run_batch_sync_task",
    "sync_account_task",
]
