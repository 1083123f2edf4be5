"""Push-notification channels: registration, renewal and receipt."""

from __future__ import annotations

import enum
import logging
import secrets
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone
from django.utils.crypto import constant_time_compare

from accounts.models import ConnectedAccount
from calendars.client import CalendarClient
from calendars.models import Calendar
from common.choices import SyncTrigger
from common.exceptions import AuthError, ProviderError
from common.utils import resolve_timedelta_setting
from webhooks.models import WebhookChannel

logger = logging.getLogger(__name__)


class NotificationOutcome(str, enum.Enum):
    SYNC_REQUESTED = "sync_requested"
    SYNC_ALREADY_PENDING = "sync_already_pending"
    HANDSHAKE = "handshake"
    UNKNOWN_CHANNEL = "unknown_channel"
    STALE_CHANNEL = "stale_channel"
    TOKEN_MISMATCH = "token_mismatch"
    DUPLICATE = "duplicate"
    SYNC_DISABLED = "sync_disabled"


def get_channel_ttl() -> timedelta:
    return resolve_timedelta_setting("WEBHOOK_CHANNEL_TTL", timedelta(days=7))


def get_renewal_window() -> timedelta:
    return resolve_timedelta_setting("WEBHOOK_RENEWAL_WINDOW", timedelta(hours=24))


def _client_for(calendar: Calendar, client: Optional[CalendarClient]) -> CalendarClient:
    return client or CalendarClient(calendar.account_id)


def _stop_registration(client: CalendarClient, channel_id: str, resource_id: str) -> None:
    try:
        client.stop_channel(channel_id, resource_id)
    except (AuthError, ProviderError) as exc:
        # The provider expires the registration on its own; notifications
        # that still arrive are dropped as unknown.
        logger.warning("Stopping channel %s failed: %s", channel_id, exc)


def ensure_watch(calendar: Calendar, *, client: Optional[CalendarClient] = None) -> WebhookChannel:
    """Register a channel for ``calendar`` and make it the only stored one.

    The new registration is created first, the row is swapped in a single
    transaction, and the previous registration is stopped last.
    """

    client = _client_for(calendar, client)
    channel_id = uuid.uuid4().hex
    token = secrets.token_urlsafe(24)
    registration = client.watch_channel(
        calendar.provider_calendar_id,
        channel_id,
        getattr(settings, "WEBHOOK_CALLBACK_URL", ""),
        token,
        get_channel_ttl(),
    )

    previous = None
    with transaction.atomic():
        channel = WebhookChannel.objects.select_for_update().filter(calendar=calendar).first()
        if channel is None:
            channel = WebhookChannel(calendar=calendar)
        else:
            previous = (channel.channel_id, channel.resource_id)
        channel.channel_id = registration.channel_id
        channel.resource_id = registration.resource_id
        channel.resource_uri = registration.resource_uri
        channel.token = token
        channel.expires_at = registration.expires_at or timezone.now() + get_channel_ttl()
        channel.handshake_received_at = None
        channel.last_message_number = None
        channel.save()

    if previous is not None:
        _stop_registration(client, *previous)
        logger.info("Replaced channel %s with %s for calendar %s", previous[0], channel.channel_id, calendar.pk)
    else:
        logger.info("Registered channel %s for calendar %s", channel.channel_id, calendar.pk)
    return channel


def stop_watch(calendar: Calendar, *, client: Optional[CalendarClient] = None) -> bool:
    """Remove the calendar's channel and stop it at the provider."""

    with transaction.atomic():
        channel = WebhookChannel.objects.select_for_update().filter(calendar=calendar).first()
        if channel is None:
            return False
        channel_id, resource_id = channel.channel_id, channel.resource_id
        channel.delete()

    _stop_registration(_client_for(calendar, client), channel_id, resource_id)
    logger.info("Stopped channel %s for calendar %s", channel_id, calendar.pk)
    return True


def stop_account_watches(account: ConnectedAccount, *, client: Optional[CalendarClient] = None) -> int:
    stopped = 0
    for calendar in account.calendars.filter(webhook_channel__isnull=False):
        if stop_watch(calendar, client=client):
            stopped += 1
    return stopped


def ensure_missing_watches(account_id: int, *, client: Optional[CalendarClient] = None) -> int:
    """Register channels for enabled calendars that lack one or are about to lose it."""

    soon = timezone.now() + get_renewal_window()
    calendars = (
        Calendar.objects.filter(account_id=account_id, sync_enabled=True)
        .filter(
            Q(webhook_channel__isnull=True)
            | Q(webhook_channel__expires_at__isnull=True)
            | Q(webhook_channel__expires_at__lte=soon)
        )
    )
    registered = 0
    for calendar in calendars:
        try:
            ensure_watch(calendar, client=client)
            registered += 1
        except (AuthError, ProviderError) as exc:
            logger.error("Registering watch for calendar %s failed: %s", calendar.pk, exc, exc_info=True)
    return registered


def renew_expiring(
    *,
    client_factory: Callable[[int], CalendarClient] = CalendarClient,
) -> Dict[str, Any]:
    """Replace channels expiring within the renewal window.

    Channels whose calendar or account no longer syncs are stopped instead.
    """

    threshold = timezone.now() + get_renewal_window()
    channels = (
        WebhookChannel.objects.filter(Q(expires_at__isnull=True) | Q(expires_at__lte=threshold))
        .select_related("calendar__account")
        .order_by("expires_at")
    )

    summary: Dict[str, Any] = {"renewed": 0, "stopped": 0, "failed": 0, "errors": []}
    clients: Dict[int, CalendarClient] = {}
    for channel in channels:
        calendar = channel.calendar
        account = calendar.account
        if account.pk not in clients:
            clients[account.pk] = client_factory(account.pk)
        client = clients[account.pk]
        try:
            if (
                not calendar.sync_enabled
                or not account.sync_enabled
                or account.status == ConnectedAccount.Status.REVOKED
            ):
                stop_watch(calendar, client=client)
                summary["stopped"] += 1
            else:
                ensure_watch(calendar, client=client)
                summary["renewed"] += 1
        except Exception as exc:
            summary["failed"] += 1
            summary["errors"].append({"calendar_id": calendar.pk, "error": str(exc)})
            logger.error(
                "Renewing channel %s for calendar %s failed: %s",
                channel.channel_id,
                calendar.pk,
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    for client in clients.values():
        client.close()

    logger.info(
        "Channel renewal finished: %s renewed, %s stopped, %s failed",
        summary["renewed"],
        summary["stopped"],
        summary["failed"],
    )
    return summary


def _parse_message_number(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def handle_notification(
    *,
    channel_id: str,
    resource_id: str,
    resource_state: str,
    message_number=None,
    token: Optional[str] = None,
) -> NotificationOutcome:
    """Validate a provider push and request a sync for the owning account."""

    from calendars.services.triggers import request_account_sync

    number = _parse_message_number(message_number)
    with transaction.atomic():
        channel = (
            WebhookChannel.objects.select_for_update()
            .select_related("calendar__account")
            .filter(channel_id=channel_id)
            .first()
        )
        if channel is None:
            logger.warning("Dropping notification for unknown channel %s", channel_id)
            return NotificationOutcome.UNKNOWN_CHANNEL
        if channel.resource_id != resource_id or channel.is_expired:
            logger.warning("Dropping notification for stale channel %s", channel_id)
            return NotificationOutcome.STALE_CHANNEL
        if not constant_time_compare(channel.token or "", token or ""):
            logger.warning("Dropping notification with bad token on channel %s", channel_id)
            return NotificationOutcome.TOKEN_MISMATCH
        if number is not None and channel.last_message_number is not None and number <= channel.last_message_number:
            logger.info("Dropping duplicate message %s on channel %s", number, channel_id)
            return NotificationOutcome.DUPLICATE

        now = timezone.now()
        update_fields = ["last_notified_at", "updated_at"]
        channel.last_notified_at = now
        if number is not None:
            channel.last_message_number = number
            update_fields.append("last_message_number")

        if resource_state == "sync":
            channel.handshake_received_at = now
            update_fields.append("handshake_received_at")
            channel.save(update_fields=update_fields)
            logger.info("Handshake received on channel %s", channel_id)
            return NotificationOutcome.HANDSHAKE

        channel.save(update_fields=update_fields)
        calendar = channel.calendar
        account = calendar.account
        if not calendar.sync_enabled or not account.sync_enabled:
            logger.info("Ignoring notification for calendar %s with sync disabled", calendar.pk)
            return NotificationOutcome.SYNC_DISABLED

    queued = request_account_sync(account.pk, trigger=SyncTrigger.WEBHOOK)
    return NotificationOutcome.SYNC_REQUESTED if queued else NotificationOutcome.SYNC_ALREADY_PENDING


__all__ = [
    "NotificationOutcome",
    "ensure_missing_watches",
    "ensure_watch",
    "handle_notification",
    "renew_expiring",
    "stop_account_watches",
    "stop_watch",
]
