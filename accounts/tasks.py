"""Celery tasks for the accounts app."""

import logging
from datetime import timedelta
from typing import Optional

from celery import shared_task
from django.utils import timezone

from accounts.models import ConnectedAccount, Credential
from accounts.tokens import TokenManager, get_safety_margin
from common.exceptions import AuthError, ReauthorizationRequired

logger = logging.getLogger(__name__)


@shared_task(name="accounts.tasks.refresh_expiring_credentials")
def refresh_expiring_credentials(lookahead_minutes: Optional[float] = None) -> dict:
    """Refresh credentials that will expire before the next scheduled run."""

    lookahead = timedelta(minutes=float(lookahead_minutes or 15))
    threshold = timezone.now() + get_safety_margin() + lookahead
    account_ids = list(
        Credential.objects.filter(
            expires_at__isnull=False,
            expires_at__lte=threshold,
            refresh_token__isnull=False,
        )
        .exclude(account__status=ConnectedAccount.Status.REVOKED)
        .values_list("account_id", flat=True)
    )

    summary = {"refreshed": 0, "revoked": 0, "failed": 0}
    manager = TokenManager()
    for account_id in account_ids:
        try:
            manager.force_refresh(account_id)
            summary["refreshed"] += 1
        except ReauthorizationRequired:
            summary["revoked"] += 1
            from notifications.services import notify_reconnect_required

            account = ConnectedAccount.objects.select_related("user").filter(pk=account_id).first()
            if account is not None:
                notify_reconnect_required(account)
        except AuthError:
            summary["failed"] += 1

    if account_ids:
        logger.info("Credential pre-refresh finished: %s", summary)
    return summary


__all__ = ["refresh_expiring_credentials"]
