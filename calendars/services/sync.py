"""Reconciliation of local calendars and events against the provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from accounts.models import ConnectedAccount
from accounts.tokens import TokenManager
from calendars.client import CalendarClient, EventListing, ProviderCalendar, ProviderEvent
from calendars.models import Calendar, Event, SyncJob
from common.choices import SyncTrigger
from common.exceptions import (
    AuthError,
    ListingTruncated,
    ProviderError,
    RateLimitedError,
    ReauthorizationRequired,
    SyncConflict,
)
from common.locks import advisory_lock
from common.utils import resolve_timedelta_setting

logger = logging.getLogger(__name__)

SYNC_LOCK_KEY = "calsync:sync-lock:{account_id}"
TRACKED_FIELDS = ("title", "description", "location", "start", "end", "is_all_day", "status")

CREATED = "created"
UPDATED = "updated"
CANCELLED = "cancelled"
UNCHANGED = "unchanged"
SKIPPED = "skipped"


def sync_lock_key(account_id: int) -> str:
    return SYNC_LOCK_KEY.format(account_id=account_id)


@dataclass
class SyncResult:
    """Outcome of one ``sync_account`` run, handed to the notification step."""

    account_id: int
    trigger: str
    status: str = SyncJob.Status.RUNNING
    job_id: Optional[int] = None
    user_id: Optional[int] = None
    calendars_updated: int = 0
    calendars_truncated: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_cancelled: int = 0
    conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    new_calendar_ids: List[int] = field(default_factory=list)
    reauthorization_required: bool = False
    rate_limited_until: Optional[datetime] = None

    @property
    def events_upserted(self) -> int:
        return self.events_created + self.events_updated + self.events_cancelled

    @property
    def coalesced(self) -> bool:
        return self.status == SyncJob.Status.COALESCED

    @property
    def succeeded(self) -> bool:
        return self.status == SyncJob.Status.SUCCEEDED

    @property
    def made_progress(self) -> bool:
        return bool(self.calendars_updated or self.calendars_truncated)

    def add_error(self, error: Exception, *, calendar: Optional[Calendar] = None) -> None:
        entry = {"type": type(error).__name__, "error": str(error)}
        if calendar is not None:
            entry["calendar_id"] = calendar.provider_calendar_id
        self.errors.append(entry)


def get_sync_window(now: Optional[datetime] = None):
    now = now or timezone.now()
    days = getattr(settings, "CALENDAR_SYNC_WINDOW_DAYS", 30)
    return now, now + timedelta(days=days)


def sync_account(
    account_id: int,
    trigger: str = SyncTrigger.MANUAL,
    *,
    client: Optional[CalendarClient] = None,
) -> SyncResult:
    """Reconcile every sync-enabled calendar of ``account_id``.

    At most one run per account executes at a time; a call made while
    another holds the account lock returns a ``coalesced`` result without
    contacting the provider.
    """

    result = SyncResult(account_id=account_id, trigger=trigger)
    account = ConnectedAccount.objects.filter(pk=account_id).first()
    if account is None:
        result.status = SyncJob.Status.ABORTED
        result.errors.append({"type": "DoesNotExist", "error": f"Account {account_id} not found"})
        logger.warning("Sync requested for missing account %s", account_id)
        return result
    result.user_id = account.user_id

    ttl = getattr(settings, "CALENDAR_SYNC_LOCK_TTL", 15 * 60)
    with advisory_lock(sync_lock_key(account_id), ttl) as acquired:
        if not acquired:
            result.status = SyncJob.Status.COALESCED
            job = SyncJob.objects.create(
                account=account,
                trigger=trigger,
                status=SyncJob.Status.COALESCED,
                finished_at=timezone.now(),
            )
            result.job_id = job.pk
            logger.warning("Sync for account %s already running; %s trigger coalesced", account_id, trigger)
            return result

        job = SyncJob.objects.create(account=account, trigger=trigger)
        result.job_id = job.pk
        try:
            _run_sync(account, result, client)
        except Exception as exc:
            result.status = SyncJob.Status.FAILED
            result.add_error(exc)
            _finish_job(job, result)
            logger.exception("Sync job %s for account %s crashed", job.pk, account_id)
            raise
        _finish_job(job, result)

    log = logger.info if result.status == SyncJob.Status.SUCCEEDED else logger.warning
    log(
        "Sync job %s for account %s finished %s: %s calendars, %s created, %s updated, %s cancelled, %s conflicts",
        job.pk,
        account_id,
        result.status,
        result.calendars_updated,
        result.events_created,
        result.events_updated,
        result.events_cancelled,
        len(result.conflicts),
    )
    return result


def _run_sync(account: ConnectedAccount, result: SyncResult, client: Optional[CalendarClient]) -> None:
    token_manager = getattr(client, "token_manager", None) or TokenManager()
    try:
        token_manager.get_valid_access_token(account.pk)
    except ReauthorizationRequired as exc:
        result.reauthorization_required = True
        result.status = SyncJob.Status.ABORTED
        result.add_error(exc)
        return
    except AuthError as exc:
        result.status = SyncJob.Status.ABORTED
        result.add_error(exc)
        return

    account.refresh_from_db()
    if not account.sync_enabled and result.trigger != SyncTrigger.MANUAL:
        result.status = SyncJob.Status.ABORTED
        result.errors.append({"type": "SyncDisabled", "error": "Sync is disabled for this account"})
        return

    client = client or CalendarClient(account.pk, token_manager=token_manager)

    try:
        provider_calendars = client.list_calendars()
    except (AuthError, ProviderError) as exc:
        _handle_fatal(account, result, exc)
        return

    calendars = _upsert_calendars(account, provider_calendars, result)
    enabled = [calendar for calendar in calendars if calendar.sync_enabled]
    time_min, time_max = get_sync_window()

    for calendar in enabled:
        try:
            listing = client.list_events(calendar.provider_calendar_id, time_min, time_max)
        except (AuthError, RateLimitedError) as exc:
            _handle_fatal(account, result, exc, calendar=calendar)
            return
        except ProviderError as exc:
            result.add_error(exc, calendar=calendar)
            logger.error(
                "Fetching events for calendar %s (account %s) failed: %s",
                calendar.provider_calendar_id,
                account.pk,
                exc,
                exc_info=True,
            )
            continue

        if apply_listing(calendar, listing, result, window=(time_min, time_max)):
            result.calendars_updated += 1
        else:
            result.calendars_truncated += 1

    finished = timezone.now()
    if result.errors:
        result.status = SyncJob.Status.PARTIAL if result.made_progress else SyncJob.Status.FAILED
        account.last_error = "; ".join(entry["error"] for entry in result.errors)[:1000]
        account.save(update_fields=["last_error", "updated_at"])
    else:
        result.status = SyncJob.Status.SUCCEEDED
        account.last_synced_at = finished
        account.last_error = ""
        account.save(update_fields=["last_synced_at", "last_error", "updated_at"])


def _handle_fatal(account, result, exc, *, calendar=None) -> None:
    result.add_error(exc, calendar=calendar)
    if isinstance(exc, ReauthorizationRequired):
        result.reauthorization_required = True
        result.status = SyncJob.Status.ABORTED
        return
    if isinstance(exc, AuthError):
        result.status = SyncJob.Status.ABORTED
        return
    if isinstance(exc, RateLimitedError):
        cooldown = exc.retry_after or resolve_timedelta_setting(
            "CALENDAR_RATE_LIMIT_COOLDOWN", timedelta(minutes=15)
        )
        result.rate_limited_until = timezone.now() + cooldown
        account.sync_cooldown_until = result.rate_limited_until
        account.last_error = str(exc)[:1000]
        account.save(update_fields=["sync_cooldown_until", "last_error", "updated_at"])
        logger.warning("Account %s rate limited until %s", account.pk, result.rate_limited_until)
    else:
        logger.error("Sync for account %s failed: %s", account.pk, exc, exc_info=True)
    result.status = SyncJob.Status.PARTIAL if result.made_progress else SyncJob.Status.FAILED


def _finish_job(job: SyncJob, result: SyncResult) -> None:
    job.status = result.status
    job.calendars_updated = result.calendars_updated
    job.events_upserted = result.events_upserted
    job.events_created = result.events_created
    job.events_updated = result.events_updated
    job.events_cancelled = result.events_cancelled
    job.conflicts = len(result.conflicts)
    job.errors = result.errors
    job.finished_at = timezone.now()
    job.save()


def _upsert_calendars(
    account: ConnectedAccount,
    provider_calendars: Iterable[ProviderCalendar],
    result: SyncResult,
) -> List[Calendar]:
    existing = {calendar.provider_calendar_id: calendar for calendar in account.calendars.all()}
    seen: List[Calendar] = []
    for item in provider_calendars:
        values = {
            "name": item.name,
            "color": item.color,
            "timezone": item.timezone,
            "is_primary": item.is_primary,
        }
        calendar = existing.get(item.id)
        if calendar is None:
            calendar = Calendar.objects.create(account=account, provider_calendar_id=item.id, **values)
            existing[item.id] = calendar
            result.new_calendar_ids.append(calendar.pk)
        else:
            changed = [name for name, value in values.items() if getattr(calendar, name) != value]
            if changed:
                for name in changed:
                    setattr(calendar, name, values[name])
                calendar.save(update_fields=changed + ["updated_at"])
        if item.is_primary and not account.provider_account_id:
            account.provider_account_id = item.id
            account.save(update_fields=["provider_account_id", "updated_at"])
        seen.append(calendar)
    return seen


def apply_listing(
    calendar: Calendar,
    listing: EventListing,
    result: SyncResult,
    *,
    window,
    now: Optional[datetime] = None,
) -> bool:
    """Apply a fetched listing to ``calendar`` in one transaction.

    Returns ``False`` for a truncated listing: its events are applied but
    nothing is tombstoned, a ``ListingTruncated`` error is recorded and the
    calendar's ``last_synced_at`` is left unchanged.
    """

    now = now or timezone.now()
    time_min, time_max = window
    with transaction.atomic():
        existing = {
            event.provider_event_id: event
            for event in Event.objects.select_for_update().filter(
                calendar=calendar,
                provider_event_id__in=[item.id for item in listing.events],
            )
        }
        seen_ids = set()
        unchanged_ids = []
        for item in listing.events:
            seen_ids.add(item.id)
            event, outcome = apply_provider_event(calendar, item, existing.get(item.id), result, now=now)
            if event is None:
                continue
            existing[item.id] = event
            if outcome == UNCHANGED:
                unchanged_ids.append(event.pk)

        if unchanged_ids:
            Event.objects.filter(pk__in=unchanged_ids).update(synced_at=now)

        if not listing.complete:
            result.add_error(ListingTruncated(calendar.provider_calendar_id, listing.pages), calendar=calendar)
            return False

        missing = (
            Event.objects.select_for_update()
            .filter(calendar=calendar, status=Event.Status.CONFIRMED)
            .in_window(time_min, time_max)
            .exclude(provider_event_id__in=seen_ids)
        )
        for event in missing:
            event.mark_cancelled(now)
            event.synced_at = now
            event.local_modified_at = None
            event.save(update_fields=["status", "cancelled_at", "synced_at", "local_modified_at", "updated_at"])
            result.events_cancelled += 1

        calendar.last_synced_at = now
        calendar.save(update_fields=["last_synced_at", "updated_at"])
    return True


def apply_provider_event(
    calendar: Calendar,
    item: ProviderEvent,
    event: Optional[Event],
    result: SyncResult,
    *,
    now: datetime,
) -> Tuple[Optional[Event], str]:
    """Upsert one provider event keyed by (calendar, provider event id).

    Returns the local row (``None`` when nothing was stored) and one of
    ``CREATED``, ``UPDATED``, ``CANCELLED``, ``UNCHANGED`` or ``SKIPPED``.
    """

    if item.is_cancelled:
        if event is None or event.is_cancelled:
            return event, SKIPPED
        event.mark_cancelled(now)
        event.provider_updated_at = item.updated or event.provider_updated_at
        event.synced_at = now
        event.local_modified_at = None
        event.save()
        result.events_cancelled += 1
        return event, CANCELLED

    start, end = item.times_in(calendar.tzinfo)
    if start is None or end is None:
        logger.warning("Skipping provider event %s without start/end", item.id)
        return event, SKIPPED

    values = {
        "title": item.title[:500],
        "description": item.description,
        "location": item.location[:500],
        "start": start,
        "end": end,
        "is_all_day": item.is_all_day,
        "status": Event.Status.CONFIRMED,
    }

    if event is None:
        event = Event.objects.create(
            calendar=calendar,
            provider_event_id=item.id,
            provider_updated_at=item.updated,
            synced_at=now,
            **values,
        )
        result.events_created += 1
        return event, CREATED

    changed = [name for name in TRACKED_FIELDS if getattr(event, name) != values[name]]
    if not changed and event.local_modified_at is None:
        return event, UNCHANGED

    if changed and event.local_modified_at is not None:
        result.conflicts.append(
            SyncConflict(event_id=event.pk, provider_event_id=item.id, fields=changed)
        )
        logger.info("Provider values replace local edit of event %s (%s)", event.pk, ", ".join(changed))

    if "start" in changed:
        event.reminder_sent_at = None
    if "status" in changed:
        event.cancelled_at = None
    for name in changed:
        setattr(event, name, values[name])
    event.provider_updated_at = item.updated or event.provider_updated_at
    event.synced_at = now
    event.local_modified_at = None
    event.save()
    if not changed:
        return event, UNCHANGED
    result.events_updated += 1
    return event, UPDATED


__all__ = [
    "SyncResult",
    "apply_listing",
    "apply_provider_event",
    "get_sync_window",
    "sync_account",
    "sync_lock_key",
]
