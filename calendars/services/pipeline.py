"""Sync, then watch new calendars, then notify."""

import logging
from typing import Optional

from calendars.client import CalendarClient
from calendars.models import SyncJob
from calendars.services.sync import SyncResult, sync_account
from common.choices import SyncTrigger

logger = logging.getLogger(__name__)


def run_account_pipeline(
    account_id: int,
    trigger: str = SyncTrigger.MANUAL,
    *,
    client: Optional[CalendarClient] = None,
) -> SyncResult:
    """Run ``sync_account`` and hand its result to the follow-up steps.

    Watch registration and notification failures are logged and never turn
    a finished sync into a failure.
    """

    from notifications.services import dispatch_sync_notifications
    from webhooks.services import ensure_missing_watches

    result = sync_account(account_id, trigger, client=client)

    if result.status in (SyncJob.Status.SUCCEEDED, SyncJob.Status.PARTIAL):
        try:
            ensure_missing_watches(account_id, client=client)
        except Exception:
            logger.exception("Registering watches for account %s failed", account_id)

    if not result.coalesced:
        try:
            dispatch_sync_notifications(result)
        except Exception:
            logger.exception("Dispatching notifications for account %s failed", account_id)

    return result


__all__ = ["run_account_pipeline"]
