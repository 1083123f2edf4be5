"""Celery tasks for the webhooks app."""

import logging

from celery import shared_task

from calendars.models import Calendar
from common.exceptions import AuthError, ProviderError
from webhooks.services import ensure_watch, renew_expiring, stop_watch

logger = logging.getLogger(__name__)


@shared_task(name="webhooks.tasks.renew_expiring_channels_task")
def renew_expiring_channels_task() -> dict:
    return renew_expiring()


@shared_task(name="webhooks.tasks.ensure_watch_task")
def ensure_watch_task(calendar_id: int) -> bool:
    calendar = Calendar.objects.select_related("account").filter(pk=calendar_id).first()
    if calendar is None or not calendar.sync_enabled:
        return False
    try:
        ensure_watch(calendar)
    except (AuthError, ProviderError) as exc:
        # The batch scheduler keeps syncing calendars without a channel.
        logger.error("Registering watch for calendar %s failed: %s", calendar_id, exc, exc_info=True)
        return False
    return True


@shared_task(name="webhooks.tasks.stop_watch_task")
def stop_watch_task(calendar_id: int) -> bool:
    calendar = Calendar.objects.filter(pk=calendar_id).first()
    if calendar is None:
        return False
    return stop_watch(calendar)


__all__ = ["ensure_watch_task", "renew_expiring_channels_task", "stop_watch_task"]
