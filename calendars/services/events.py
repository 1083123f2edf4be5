"""Local event edits written through to the provider."""

import logging
from typing import Any, Dict, Optional, Tuple

from django.utils import timezone

from calendars.client import CalendarClient, ProviderEvent, build_event_body
from calendars.models import Calendar, Event
from common.exceptions import AuthError, ProviderError

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description", "location", "start", "end", "is_all_day")


def _client_for(calendar: Calendar, client: Optional[CalendarClient]) -> CalendarClient:
    return client or CalendarClient(calendar.account_id)


def _copy_provider_values(event: Event, item: ProviderEvent) -> None:
    event.title = item.title[:500]
    event.description = item.description
    event.location = item.location[:500]
    start, end = item.times_in(event.calendar.tzinfo)
    if start is not None:
        event.start = start
    if end is not None:
        event.end = end
    event.is_all_day = item.is_all_day
    event.provider_updated_at = item.updated
    event.synced_at = timezone.now()
    event.local_modified_at = None


def create_event(calendar: Calendar, data: Dict[str, Any], *, client: Optional[CalendarClient] = None) -> Event:
    """Create the event at the provider first, then store the returned row.

    Provider and auth errors propagate; nothing is stored locally.
    """

    body = build_event_body(
        title=data.get("title", ""),
        description=data.get("description", ""),
        location=data.get("location", ""),
        start=data["start"],
        end=data["end"],
        is_all_day=data.get("is_all_day", False),
        tzinfo=calendar.tzinfo,
    )
    item = _client_for(calendar, client).create_event(calendar.provider_calendar_id, body)
    event, _ = Event.objects.get_or_create(
        calendar=calendar,
        provider_event_id=item.id,
        defaults={"start": item.start or data["start"], "end": item.end or data["end"]},
    )
    _copy_provider_values(event, item)
    event.save()
    logger.info("Created event %s on calendar %s", event.pk, calendar.pk)
    return event


def update_event(
    event: Event,
    changes: Dict[str, Any],
    *,
    client: Optional[CalendarClient] = None,
) -> Tuple[Event, bool]:
    """Apply ``changes`` locally and push them to the provider.

    Returns ``(event, pushed)``. When the push fails the local edit stays
    marked with ``local_modified_at`` and the next sync supersedes it.
    """

    changes = {key: value for key, value in changes.items() if key in EDITABLE_FIELDS}
    if not changes:
        return event, True

    if "start" in changes and changes["start"] != event.start:
        event.reminder_sent_at = None
    for key, value in changes.items():
        setattr(event, key, value)
    event.local_modified_at = timezone.now()
    event.save()

    is_all_day = changes.get("is_all_day", event.is_all_day)
    body = build_event_body(
        title=changes.get("title"),
        description=changes.get("description"),
        location=changes.get("location"),
        start=event.start if ("start" in changes or "is_all_day" in changes) else None,
        end=event.end if ("end" in changes or "is_all_day" in changes) else None,
        is_all_day=is_all_day,
        tzinfo=event.calendar.tzinfo,
    )
    try:
        item = _client_for(event.calendar, client).update_event(
            event.calendar.provider_calendar_id,
            event.provider_event_id,
            body,
        )
    except (AuthError, ProviderError) as exc:
        logger.warning("Pushing edit of event %s to provider failed: %s", event.pk, exc)
        return event, False

    _copy_provider_values(event, item)
    event.save()
    return event, True


__all__ = ["EDITABLE_FIELDS", "create_event", "update_event"]
