"""Turn sync results and upcoming events into user-facing alerts."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.contrib.auth import get_user_model
from django.utils import timezone

from accounts.models import ConnectedAccount
from calendars.models import Event
from common.exceptions import DeliveryError, DeliveryTokenInvalid
from notifications.models import Notification, NotificationPreference, PushToken
from notifications.push import DeliveryStatus, PushMessage, get_push_transport
from notifications.serializers import NotificationSerializer

logger = logging.getLogger(__name__)

DIGEST_MAX_EVENTS = 10
MAX_REMINDER_LEAD = timedelta(hours=24)
ALL_DAY_SLACK = timedelta(days=2)


@dataclass
class DeliveryResult:
    """Represents how one alert reached a user."""

    notification: Optional[Notification] = None
    push_attempted: bool = False
    push_sent: int = 0
    push_error: Optional[Exception] = None
    suppressed_reason: str = ""
    invalid_tokens: List[DeliveryTokenInvalid] = field(default_factory=list)


def broadcast_notification(notification: Notification) -> None:
    """Send ``notification`` to the user's websocket group."""
    try:
        channel_layer = get_channel_layer()
        async_to_sync(channel_layer.group_send)(
            f"notifications_{notification.user_id}",
            {"type": "send_notification", "message": NotificationSerializer(notification).data},
        )
    except Exception as exc:
        logger.warning("WebSocket notify failed for user %s: %s", notification.user_id, exc)


def send_push_to_user(
    user,
    *,
    title: str,
    message: str,
    type_: str = Notification.Type.GENERAL,
    payload: Optional[Dict[str, Any]] = None,
    preference: Optional[NotificationPreference] = None,
    now: Optional[datetime] = None,
) -> DeliveryResult:
    """Store an in-app notification and push it to the user's devices.

    Quiet hours and a disabled push preference suppress the push only.
    Tokens the transport reports as unregistered are deleted.
    """

    now = now or timezone.now()
    preference = preference or NotificationPreference.for_user(user)
    notification = Notification.objects.create(
        user=user,
        title=title,
        message=message,
        type=type_,
        payload=payload or {},
    )
    broadcast_notification(notification)
    result = DeliveryResult(notification=notification)

    if not preference.push_enabled:
        result.suppressed_reason = "push_disabled"
        return result
    if preference.in_quiet_hours(now):
        result.suppressed_reason = "quiet_hours"
        return result

    tokens = list(PushToken.objects.filter(user=user).values_list("token", flat=True))
    if not tokens:
        result.suppressed_reason = "no_tokens"
        return result

    result.push_attempted = True
    data = dict(payload or {}, notification_id=notification.pk, type=str(type_))
    messages = [PushMessage(token=token, title=title, body=message, data=data) for token in tokens]
    try:
        receipts = get_push_transport().send(messages)
    except DeliveryError as exc:
        result.push_error = exc
        logger.error("Push delivery to user %s failed: %s", user.pk, exc, exc_info=True)
        return result

    delivered = [receipt.token for receipt in receipts if receipt.status == DeliveryStatus.OK]
    invalid = [receipt.token for receipt in receipts if receipt.status == DeliveryStatus.TOKEN_INVALID]
    failures = [receipt for receipt in receipts if receipt.status == DeliveryStatus.ERROR]

    if invalid:
        PushToken.objects.filter(user=user, token__in=invalid).delete()
        result.invalid_tokens = [DeliveryTokenInvalid(token) for token in invalid]
        logger.info("Removed %s unregistered push token(s) for user %s", len(invalid), user.pk)
    if delivered:
        PushToken.objects.filter(user=user, token__in=delivered).update(last_used_at=now)
        notification.pushed = True
        notification.save(update_fields=["pushed", "updated_at"])
    if failures and not delivered:
        result.push_error = DeliveryError("; ".join(receipt.message for receipt in failures) or "push failed")

    result.push_sent = len(delivered)
    return result


# --- reconnect notices --------------------------------------------------
def notify_reconnect_required(account: ConnectedAccount) -> Optional[DeliveryResult]:
    """Tell the user an account needs reconnecting, once per revocation."""

    already_sent = Notification.objects.filter(
        user_id=account.user_id,
        type=Notification.Type.RECONNECT_REQUIRED,
        status=Notification.Status.UNREAD,
        payload__account_id=account.pk,
    ).exists()
    if already_sent:
        return None
    return send_push_to_user(
        account.user,
        title="Reconnect your calendar",
        message=f"We lost access to your {account.get_provider_display()} calendar. Reconnect it to keep events in sync.",
        type_=Notification.Type.RECONNECT_REQUIRED,
        payload={"account_id": account.pk, "provider": account.provider},
    )


def clear_reconnect_notices(account: ConnectedAccount) -> int:
    return Notification.objects.filter(
        user_id=account.user_id,
        type=Notification.Type.RECONNECT_REQUIRED,
        status=Notification.Status.UNREAD,
        payload__account_id=account.pk,
    ).update(status=Notification.Status.READ, updated_at=timezone.now())


# --- digests ------------------------------------------------------------
def _user_events(user):
    return Event.objects.active().filter(
        calendar__account__user=user,
        calendar__sync_enabled=True,
    )


def _format_event_line(event: Event, tzinfo) -> str:
    if event.is_all_day:
        return f"All day  {event.title or '(untitled)'}"
    return f"{event.start.astimezone(tzinfo):%H:%M}  {event.title or '(untitled)'}"


def _digest_events(user, local_now: datetime) -> List[Event]:
    """All-day events dated today, then timed events overlapping the local day.

    All-day rows are compared by date in their calendar's timezone, so the
    query window is widened by the largest UTC offset difference.
    """

    today = local_now.date()
    day_start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    day_end = day_start + timedelta(days=1)
    all_day = [
        event
        for event in _user_events(user)
        .filter(is_all_day=True)
        .in_window(day_start - ALL_DAY_SLACK, day_end + ALL_DAY_SLACK)
        .select_related("calendar")
        .order_by("start")
        if event.covers_date(today)
    ]
    timed = list(_user_events(user).filter(is_all_day=False).in_window(day_start, day_end).order_by("start"))
    return all_day + timed


def maybe_send_daily_digest(user, preference: NotificationPreference, now: datetime) -> Optional[DeliveryResult]:
    """Send today's digest if it is due in the user's timezone and not yet sent."""

    if not preference.daily_digest_enabled:
        return None
    local_now = preference.local_now(now)
    today = local_now.date()
    if local_now.hour < preference.digest_hour or preference.last_digest_sent_on == today:
        return None

    claimed = (
        NotificationPreference.objects.filter(pk=preference.pk)
        .exclude(last_digest_sent_on=today)
        .update(last_digest_sent_on=today)
    )
    if not claimed:
        return None
    preference.last_digest_sent_on = today

    events = _digest_events(user, local_now)

    if events:
        lines = [_format_event_line(event, preference.tzinfo) for event in events[:DIGEST_MAX_EVENTS]]
        if len(events) > DIGEST_MAX_EVENTS:
            lines.append(f"+{len(events) - DIGEST_MAX_EVENTS} more")
        title = f"Today: {len(events)} event{'s' if len(events) != 1 else ''}"
        message = "\n".join(lines)
    else:
        title = "Today: no events"
        message = "Your calendar is clear today."

    return send_push_to_user(
        user,
        title=title,
        message=message,
        type_=Notification.Type.DAILY_DIGEST,
        payload={"date": today.isoformat(), "event_ids": [event.pk for event in events]},
        preference=preference,
        now=now,
    )


def send_daily_digests(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or timezone.now()
    User = get_user_model()
    users = User.objects.filter(
        connected_accounts__status__in=[
            ConnectedAccount.Status.AUTHORIZED,
            ConnectedAccount.Status.REFRESH_FAILED,
        ]
    ).distinct()

    summary: Dict[str, Any] = {"sent": 0, "failed": 0, "errors": []}
    for user in users:
        try:
            result = maybe_send_daily_digest(user, NotificationPreference.for_user(user), now)
        except Exception as exc:
            summary["failed"] += 1
            summary["errors"].append({"user_id": user.pk, "error": str(exc)})
            logger.error("Daily digest for user %s failed: %s", user.pk, exc, exc_info=True)
            continue
        if result is not None:
            summary["sent"] += 1
    if summary["sent"] or summary["failed"]:
        logger.info("Daily digests: %s sent, %s failed", summary["sent"], summary["failed"])
    return summary


# --- reminders ----------------------------------------------------------
def send_due_reminders_for_user(user, preference: NotificationPreference, now: datetime) -> int:
    """Remind ``user`` of timed events starting within their lead time.

    Each event is claimed by setting ``reminder_sent_at`` before the push,
    so concurrent dispatchers never remind twice.
    """

    if not preference.event_reminders_enabled:
        return 0
    horizon = now + timedelta(minutes=preference.reminder_lead_minutes)
    events = list(
        _user_events(user)
        .filter(is_all_day=False, reminder_sent_at__isnull=True, start__gt=now, start__lte=horizon)
        .order_by("start")
    )

    sent = 0
    for event in events:
        claimed = Event.objects.filter(pk=event.pk, reminder_sent_at__isnull=True).update(reminder_sent_at=now)
        if not claimed:
            continue
        minutes = max(1, int((event.start - now).total_seconds() // 60))
        result = send_push_to_user(
            user,
            title=event.title or "Upcoming event",
            message=f"Starts in {minutes} minute{'s' if minutes != 1 else ''}"
            + (f" at {event.location}" if event.location else ""),
            type_=Notification.Type.EVENT_REMINDER,
            payload={"event_id": event.pk, "start": event.start.isoformat()},
            preference=preference,
            now=now,
        )
        sent += 1
        if result.push_error is not None:
            logger.warning("Reminder push for event %s failed: %s", event.pk, result.push_error)
    return sent


def dispatch_due_reminders(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or timezone.now()
    User = get_user_model()
    user_ids = (
        Event.objects.active()
        .filter(
            calendar__sync_enabled=True,
            is_all_day=False,
            reminder_sent_at__isnull=True,
            start__gt=now,
            start__lte=now + MAX_REMINDER_LEAD,
        )
        .values_list("calendar__account__user_id", flat=True)
        .distinct()
    )

    summary: Dict[str, Any] = {"users": 0, "reminders": 0, "failed": 0, "errors": []}
    for user in User.objects.filter(pk__in=list(user_ids)):
        summary["users"] += 1
        try:
            summary["reminders"] += send_due_reminders_for_user(user, NotificationPreference.for_user(user), now)
        except Exception as exc:
            summary["failed"] += 1
            summary["errors"].append({"user_id": user.pk, "error": str(exc)})
            logger.error("Reminders for user %s failed: %s", user.pk, exc, exc_info=True)
    if summary["reminders"] or summary["failed"]:
        logger.info("Event reminders: %s sent, %s failed", summary["reminders"], summary["failed"])
    return summary


# --- sync pipeline step -------------------------------------------------
def dispatch_sync_notifications(result, now: Optional[datetime] = None) -> Dict[str, int]:
    """Consume a ``SyncResult``: reconnect notice, digest and reminders."""

    summary = {"reconnect": 0, "digest": 0, "reminders": 0}
    if result.user_id is None or result.coalesced:
        return summary
    now = now or timezone.now()

    if result.reauthorization_required:
        account = ConnectedAccount.objects.select_related("user").filter(pk=result.account_id).first()
        if account is not None and notify_reconnect_required(account) is not None:
            summary["reconnect"] = 1
        return summary

    if not result.made_progress:
        return summary

    user = get_user_model().objects.get(pk=result.user_id)
    preference = NotificationPreference.for_user(user)
    if maybe_send_daily_digest(user, preference, now) is not None:
        summary["digest"] = 1
    summary["reminders"] = send_due_reminders_for_user(user, preference, now)
    return summary


__all__ = [
    "DeliveryResult",
    "broadcast_notification",
    "clear_reconnect_notices",
    "dispatch_due_reminders",
    "dispatch_sync_notifications",
    "maybe_send_daily_digest",
    "notify_reconnect_required",
    "send_daily_digests",
    "send_due_reminders_for_user",
    "send_push_to_user",
]
