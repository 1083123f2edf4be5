"""Entry points that request a sync for an account.

A pending marker in the shared cache keeps at most one queued
``sync_account_task`` per account; the task clears it when it starts.
"""

import logging

from django.conf import settings
from django.core.cache import cache

from common.choices import SyncTrigger

logger = logging.getLogger(__name__)

PENDING_KEY = "calsync:sync-pending:{account_id}"


def pending_key(account_id: int) -> str:
    return PENDING_KEY.format(account_id=account_id)


def clear_pending(account_id: int) -> None:
    cache.delete(pending_key(account_id))


def request_account_sync(account_id: int, trigger: str = SyncTrigger.MANUAL) -> bool:
    """Enqueue a pipeline run for ``account_id`` unless one is already queued.

    Returns ``True`` when a task was enqueued.
    """

    key = pending_key(account_id)
    ttl = getattr(settings, "CALENDAR_SYNC_LOCK_TTL", 15 * 60)
    if not cache.add(key, str(trigger), timeout=ttl):
        logger.info("Sync already queued for account %s; %s trigger coalesced", account_id, trigger)
        return False

    from calendars.tasks import sync_account_task

    try:
        sync_account_task.delay(account_id, str(trigger))
    except Exception:
        cache.delete(key)
        logger.exception("Unable to enqueue sync for account %s", account_id)
        raise
    logger.info("Queued %s sync for account %s", trigger, account_id)
    return True


__all__ = ["clear_pending", "pending_key", "request_account_sync"]
