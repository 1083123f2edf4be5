"""Periodic reconciliation of accounts the webhook path may have missed."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from django.conf import settings
from django.db.models import F, Q
from django.utils import timezone

from accounts.models import ConnectedAccount
from calendars.models import SyncJob
from common.choices import SyncTrigger
from common.utils import chunked

logger = logging.getLogger(__name__)

DEFAULT_INTERVALS = {
    ConnectedAccount.Tier.PRIORITY: timedelta(minutes=30),
    ConnectedAccount.Tier.STANDARD: timedelta(hours=6),
}


def _resolve_intervals() -> Dict[str, timedelta]:
    configured = getattr(settings, "CALENDAR_SYNC_INTERVALS", None) or {}
    intervals = dict(DEFAULT_INTERVALS)
    for tier, value in configured.items():
        if isinstance(value, timedelta):
            intervals[tier] = value
        else:
            try:
                intervals[tier] = timedelta(seconds=float(value))
            except (TypeError, ValueError):
                logger.warning("Invalid CALENDAR_SYNC_INTERVALS[%r]=%r; using default", tier, value)
    return intervals


def select_due_accounts(now: Optional[datetime] = None) -> List[ConnectedAccount]:
    """Eligible accounts that are stale for their tier or lack webhook coverage."""

    now = now or timezone.now()
    eligible = ConnectedAccount.objects.filter(
        status__in=[ConnectedAccount.Status.AUTHORIZED, ConnectedAccount.Status.REFRESH_FAILED],
        sync_enabled=True,
    ).filter(Q(sync_cooldown_until__isnull=True) | Q(sync_cooldown_until__lte=now))

    due = Q(last_synced_at__isnull=True)
    for tier, interval in _resolve_intervals().items():
        due |= Q(tier=tier, last_synced_at__lt=now - interval)
    due |= Q(calendars__sync_enabled=True, calendars__last_synced_at__isnull=True)
    due |= Q(calendars__sync_enabled=True, calendars__webhook_channel__isnull=True)
    due |= Q(calendars__sync_enabled=True, calendars__webhook_channel__expires_at__lte=now)

    return list(
        eligible.filter(due)
        .distinct()
        .order_by(F("last_synced_at").asc(nulls_first=True), "pk")
    )


def run_batch_sync(
    *,
    accounts: Optional[Iterable[ConnectedAccount]] = None,
    batch_size: Optional[int] = None,
    delay: Optional[float] = None,
    sync: Optional[Callable[..., Any]] = None,
    sleep: Callable[[float], None] = time.sleep,
    trigger: str = SyncTrigger.CRON,
) -> Dict[str, Any]:
    """Sync due accounts in fixed-size batches with a pause between batches.

    One account failing is logged and counted; it never stops the batch or
    the batches after it.
    """

    if sync is None:
        from calendars.services.pipeline import run_account_pipeline as sync

    if accounts is None:
        accounts = select_due_accounts()
    batch_size = batch_size or getattr(settings, "CALENDAR_SYNC_BATCH_SIZE", 10)
    delay = getattr(settings, "CALENDAR_SYNC_BATCH_DELAY", 2) if delay is None else delay

    summary: Dict[str, Any] = {
        "batches": 0,
        "processed": 0,
        "succeeded": 0,
        "failed": 0,
        "coalesced": 0,
        "errors": [],
    }

    batches = list(chunked(list(accounts), batch_size))
    for index, batch in enumerate(batches):
        summary["batches"] += 1
        for account in batch:
            summary["processed"] += 1
            try:
                result = sync(account.pk, trigger)
            except Exception as exc:
                summary["failed"] += 1
                summary["errors"].append({"account_id": account.pk, "error": str(exc)})
                logger.error(
                    "Batch sync of account %s failed: %s",
                    account.pk,
                    exc,
                    exc_info=(type(exc), exc, exc.__traceback__),
                )
                continue

            if result.coalesced:
                summary["coalesced"] += 1
            elif result.status == SyncJob.Status.SUCCEEDED:
                summary["succeeded"] += 1
            else:
                summary["failed"] += 1
                summary["errors"].append(
                    {"account_id": account.pk, "status": str(result.status), "errors": result.errors}
                )

        if index < len(batches) - 1 and delay:
            sleep(delay)

    logger.info(
        "Batch sync finished: %s batches, %s processed, %s succeeded, %s failed, %s coalesced",
        summary["batches"],
        summary["processed"],
        summary["succeeded"],
        summary["failed"],
        summary["coalesced"],
    )
    return summary


__all__ = ["run_batch_sync", "select_due_accounts"]
