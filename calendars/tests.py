from datetime import datetime, timedelta, timezone as dt_timezone
from io import StringIO
from unittest.mock import Mock, patch
from zoneinfo import ZoneInfo

import requests
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from accounts.models import ConnectedAccount, Credential
from accounts.tokens import TokenManager
from calendars.client import CalendarClient, EventListing, ProviderCalendar, ProviderEvent
from calendars.models import Calendar, Event, SyncJob
from calendars.services.events import create_event, update_event
from calendars.services.pipeline import run_account_pipeline
from calendars.services.scheduler import run_batch_sync, select_due_accounts
from calendars.services.sync import SyncResult, apply_listing, sync_account, sync_lock_key
from calendars.services.triggers import pending_key, request_account_sync
from calendars.tasks import prune_sync_history_task, sync_account_task
from common.choices import SyncTrigger
from common.exceptions import (
    AuthError,
    ProviderError,
    ProviderNotFoundError,
    ProviderServerError,
    RateLimitedError,
    ReauthorizationRequired,
)
from common.locks import acquire_lock, release_lock
from webhooks.models import WebhookChannel

NO_BACKOFF = dict(
    PROVIDER_MAX_ATTEMPTS=3,
    PROVIDER_RETRY_INITIAL_DELAY=0,
    PROVIDER_RETRY_MAX_DELAY=0,
    PROVIDER_RETRY_JITTER=0,
)

PRIMARY = "primary@example.com"


def make_account(username="alice", **fields):
    user = get_user_model().objects.create_user(username=username, password="secret")
    account = ConnectedAccount.objects.create(user=user, provider="google", **fields)
    Credential.objects.create(
        account=account,
        access_token="access",
        refresh_token="refresh",
        expires_at=timezone.now() + timedelta(hours=1),
    )
    return account


def provider_event(event_id, start, *, duration=timedelta(hours=1), **fields):
    return ProviderEvent(id=event_id, start=start, end=start + duration, **fields)


class FakeCalendarClient:
    """Stands in for ``CalendarClient`` and records every provider call."""

    def __init__(self, account_id, *, calendars=None, events=None, token_manager=None):
        self.account_id = account_id
        self.token_manager = token_manager or Mock(**{"get_valid_access_token.return_value": "access"})
        self.calendars = calendars if calendars is not None else [
            ProviderCalendar(id=PRIMARY, name="Primary", is_primary=True, timezone="UTC")
        ]
        self.events = events or {}
        self.calls = []

    def list_calendars(self):
        self.calls.append(("list_calendars",))
        return list(self.calendars)

    def list_events(self, calendar_id, time_min, time_max):
        self.calls.append(("list_events", calendar_id))
        value = self.events.get(calendar_id, [])
        if isinstance(value, Exception):
            raise value
        if isinstance(value, EventListing):
            return value
        return EventListing(events=list(value), complete=True, pages=1)


class SyncAccountTests(TestCase):
    def setUp(self):
        cache.clear()
        self.account = make_account()
        self.base = (timezone.now() + timedelta(days=1)).replace(microsecond=0)

    def test_first_sync_creates_calendars_and_events(self):
        client = FakeCalendarClient(
            self.account.pk,
            events={PRIMARY: [provider_event("a", self.base, title="Standup"), provider_event("b", self.base + timedelta(hours=3))]},
        )

        result = sync_account(self.account.pk, SyncTrigger.CRON, client=client)

        self.assertEqual(result.status, SyncJob.Status.SUCCEEDED)
        self.assertEqual(result.events_created, 2)
        self.assertEqual(result.calendars_updated, 1)
        calendar = Calendar.objects.get(account=self.account)
        self.assertTrue(calendar.is_primary)
        self.assertIn(calendar.pk, result.new_calendar_ids)
        self.assertEqual(Event.objects.filter(calendar=calendar).count(), 2)

        self.account.refresh_from_db()
        self.assertIsNotNone(self.account.last_synced_at)
        self.assertEqual(self.account.provider_account_id, PRIMARY)
        job = SyncJob.objects.get(pk=result.job_id)
        self.assertEqual(job.status, SyncJob.Status.SUCCEEDED)
        self.assertEqual(job.events_created, 2)
        self.assertIsNotNone(job.finished_at)

    def test_applying_the_same_events_twice_is_idempotent(self):
        events = {PRIMARY: [provider_event("a", self.base, title="Standup")]}
        sync_account(self.account.pk, SyncTrigger.CRON, client=FakeCalendarClient(self.account.pk, events=events))
        second = sync_account(self.account.pk, SyncTrigger.CRON, client=FakeCalendarClient(self.account.pk, events=events))

        self.assertEqual(Event.objects.filter(provider_event_id="a").count(), 1)
        self.assertEqual(Calendar.objects.filter(account=self.account).count(), 1)
        self.assertEqual(second.events_created, 0)
        self.assertEqual(second.events_updated, 0)
        self.assertEqual(second.new_calendar_ids, [])

    def test_unchanged_moved_and_cancelled_events(self):
        a = provider_event("A", self.base, title="Unchanged")
        b = provider_event("B", self.base + timedelta(hours=2), title="Moved")
        c = provider_event("C", self.base + timedelta(hours=4), title="Deleted")
        sync_account(self.account.pk, SyncTrigger.CRON, client=FakeCalendarClient(self.account.pk, events={PRIMARY: [a, b, c]}))
        a_before = Event.objects.get(provider_event_id="A")

        new_b_start = self.base + timedelta(days=2)
        upstream = [
            a,
            provider_event("B", new_b_start, duration=timedelta(minutes=30), title="Moved"),
            ProviderEvent(id="C", status="cancelled"),
        ]
        result = sync_account(
            self.account.pk, SyncTrigger.WEBHOOK, client=FakeCalendarClient(self.account.pk, events={PRIMARY: upstream})
        )

        self.assertEqual(result.status, SyncJob.Status.SUCCEEDED)
        self.assertEqual(result.events_updated, 1)
        self.assertEqual(result.events_cancelled, 1)

        a_after = Event.objects.get(provider_event_id="A")
        self.assertEqual(a_after.title, "Unchanged")
        self.assertEqual(a_after.start, a_before.start)
        self.assertEqual(a_after.updated_at, a_before.updated_at)

        b_after = Event.objects.get(provider_event_id="B")
        self.assertEqual(b_after.start, new_b_start)
        self.assertEqual(b_after.end, new_b_start + timedelta(minutes=30))

        c_after = Event.objects.get(provider_event_id="C")
        self.assertEqual(c_after.status, Event.Status.CANCELLED)
        self.assertIsNotNone(c_after.cancelled_at)

    def test_event_missing_from_complete_listing_is_tombstoned(self):
        sync_account(
            self.account.pk,
            SyncTrigger.CRON,
            client=FakeCalendarClient(self.account.pk, events={PRIMARY: [provider_event("gone", self.base)]}),
        )
        result = sync_account(self.account.pk, SyncTrigger.CRON, client=FakeCalendarClient(self.account.pk, events={PRIMARY: []}))

        self.assertEqual(result.events_cancelled, 1)
        self.assertEqual(Event.objects.get(provider_event_id="gone").status, Event.Status.CANCELLED)

    def test_local_edit_loses_to_provider_and_is_reported(self):
        sync_account(
            self.account.pk,
            SyncTrigger.CRON,
            client=FakeCalendarClient(self.account.pk, events={PRIMARY: [provider_event("e", self.base, title="Original")]}),
        )
        Event.objects.filter(provider_event_id="e").update(title="Mine", local_modified_at=timezone.now())

        result = sync_account(
            self.account.pk,
            SyncTrigger.CRON,
            client=FakeCalendarClient(self.account.pk, events={PRIMARY: [provider_event("e", self.base, title="Theirs")]}),
        )

        event = Event.objects.get(provider_event_id="e")
        self.assertEqual(event.title, "Theirs")
        self.assertIsNone(event.local_modified_at)
        self.assertEqual(len(result.conflicts), 1)
        self.assertEqual(result.conflicts[0].fields, ("title",))
        self.assertEqual(SyncJob.objects.get(pk=result.job_id).conflicts, 1)

    def test_moving_an_event_resets_its_reminder(self):
        sync_account(
            self.account.pk,
            SyncTrigger.CRON,
            client=FakeCalendarClient(self.account.pk, events={PRIMARY: [provider_event("e", self.base)]}),
        )
        Event.objects.filter(provider_event_id="e").update(reminder_sent_at=timezone.now())

        sync_account(
            self.account.pk,
            SyncTrigger.CRON,
            client=FakeCalendarClient(self.account.pk, events={PRIMARY: [provider_event("e", self.base + timedelta(hours=1))]}),
        )

        self.assertIsNone(Event.objects.get(provider_event_id="e").reminder_sent_at)

    def test_second_trigger_is_coalesced_while_lock_is_held(self):
        client = FakeCalendarClient(self.account.pk)
        token = acquire_lock(sync_lock_key(self.account.pk), ttl=60)
        try:
            result = sync_account(self.account.pk, SyncTrigger.WEBHOOK, client=client)
        finally:
            release_lock(sync_lock_key(self.account.pk), token)

        self.assertTrue(result.coalesced)
        self.assertEqual(client.calls, [])
        client.token_manager.get_valid_access_token.assert_not_called()
        self.assertEqual(SyncJob.objects.get(pk=result.job_id).status, SyncJob.Status.COALESCED)

        follow_up = sync_account(self.account.pk, SyncTrigger.WEBHOOK, client=client)
        self.assertEqual(follow_up.status, SyncJob.Status.SUCCEEDED)

    def test_reauthorization_short_circuits_without_provider_calls(self):
        client = FakeCalendarClient(self.account.pk)
        client.token_manager.get_valid_access_token.side_effect = ReauthorizationRequired("revoked")

        result = sync_account(self.account.pk, SyncTrigger.CRON, client=client)

        self.assertTrue(result.reauthorization_required)
        self.assertEqual(result.status, SyncJob.Status.ABORTED)
        self.assertEqual(client.calls, [])

    def test_revoked_account_keeps_short_circuiting(self):
        oauth = Mock()
        manager = TokenManager(oauth_client=oauth)
        manager.revoke(self.account.pk, reason="invalid_grant")

        for _ in range(2):
            client = FakeCalendarClient(self.account.pk, token_manager=manager)
            result = sync_account(self.account.pk, SyncTrigger.WEBHOOK, client=client)
            self.assertTrue(result.reauthorization_required)
            self.assertEqual(client.calls, [])
        oauth.refresh_token.assert_not_called()

    def test_one_failing_calendar_yields_partial_and_keeps_last_synced_at(self):
        client = FakeCalendarClient(
            self.account.pk,
            calendars=[
                ProviderCalendar(id=PRIMARY, name="Primary", is_primary=True),
                ProviderCalendar(id="team@example.com", name="Team"),
            ],
            events={
                PRIMARY: [provider_event("a", self.base)],
                "team@example.com": ProviderServerError("backend error", status_code=503),
            },
        )

        with self.assertLogs("calendars.services.sync", level="ERROR"):
            result = sync_account(self.account.pk, SyncTrigger.CRON, client=client)

        self.assertEqual(result.status, SyncJob.Status.PARTIAL)
        self.assertEqual(result.calendars_updated, 1)
        self.assertEqual(result.errors[0]["calendar_id"], "team@example.com")
        self.assertTrue(Event.objects.filter(provider_event_id="a").exists())
        self.account.refresh_from_db()
        self.assertIsNone(self.account.last_synced_at)
        self.assertIn("backend error", self.account.last_error)
        self.assertIsNotNone(Calendar.objects.get(provider_calendar_id=PRIMARY).last_synced_at)
        self.assertIsNone(Calendar.objects.get(provider_calendar_id="team@example.com").last_synced_at)

    def test_truncated_listing_is_reported_as_partial(self):
        client = FakeCalendarClient(
            self.account.pk,
            events={PRIMARY: EventListing(events=[provider_event("a", self.base)], complete=False, pages=20)},
        )

        result = sync_account(self.account.pk, SyncTrigger.CRON, client=client)

        self.assertEqual(result.status, SyncJob.Status.PARTIAL)
        self.assertEqual((result.calendars_updated, result.calendars_truncated), (0, 1))
        self.assertEqual(result.errors[0]["type"], "ListingTruncated")
        self.assertEqual(result.errors[0]["calendar_id"], PRIMARY)
        self.assertTrue(Event.objects.filter(provider_event_id="a").exists())
        self.assertIsNone(Calendar.objects.get(provider_calendar_id=PRIMARY).last_synced_at)
        self.account.refresh_from_db()
        self.assertIsNone(self.account.last_synced_at)
        self.assertEqual(SyncJob.objects.get(pk=result.job_id).status, SyncJob.Status.PARTIAL)

    def test_rate_limit_sets_cooldown_and_stops(self):
        client = FakeCalendarClient(
            self.account.pk,
            events={PRIMARY: RateLimitedError("slow down", status_code=429, retry_after=timedelta(minutes=2))},
        )

        result = sync_account(self.account.pk, SyncTrigger.CRON, client=client)

        self.assertEqual(result.status, SyncJob.Status.FAILED)
        self.assertIsNotNone(result.rate_limited_until)
        self.account.refresh_from_db()
        self.assertEqual(self.account.sync_cooldown_until, result.rate_limited_until)
        self.assertTrue(self.account.in_cooldown)
        self.assertNotIn(self.account, select_due_accounts())

    def test_disabled_account_only_syncs_manually(self):
        ConnectedAccount.objects.filter(pk=self.account.pk).update(sync_enabled=False)

        cron = sync_account(self.account.pk, SyncTrigger.CRON, client=FakeCalendarClient(self.account.pk))
        manual = sync_account(self.account.pk, SyncTrigger.MANUAL, client=FakeCalendarClient(self.account.pk))

        self.assertEqual(cron.status, SyncJob.Status.ABORTED)
        self.assertEqual(manual.status, SyncJob.Status.SUCCEEDED)

    def test_disabled_calendar_is_not_fetched(self):
        sync_account(self.account.pk, SyncTrigger.CRON, client=FakeCalendarClient(self.account.pk))
        Calendar.objects.filter(provider_calendar_id=PRIMARY).update(sync_enabled=False)
        client = FakeCalendarClient(self.account.pk)

        sync_account(self.account.pk, SyncTrigger.CRON, client=client)

        self.assertEqual(client.calls, [("list_calendars",)])

    def test_missing_account_is_aborted(self):
        result = sync_account(999999, SyncTrigger.CRON, client=FakeCalendarClient(999999))
        self.assertEqual(result.status, SyncJob.Status.ABORTED)
        self.assertIsNone(result.job_id)


class ApplyListingTests(TestCase):
    def setUp(self):
        self.account = make_account()
        self.calendar = Calendar.objects.create(account=self.account, provider_calendar_id=PRIMARY)
        self.now = timezone.now()
        self.window = (self.now, self.now + timedelta(days=30))
        self.start = (self.now + timedelta(days=1)).replace(microsecond=0)
        Event.objects.create(calendar=self.calendar, provider_event_id="kept", start=self.start, end=self.start + timedelta(hours=1))

    def test_truncated_listing_never_tombstones(self):
        result = SyncResult(account_id=self.account.pk, trigger=SyncTrigger.CRON)
        applied = apply_listing(self.calendar, EventListing(events=[], complete=False, pages=20), result, window=self.window)

        self.assertFalse(applied)
        self.assertEqual(Event.objects.get(provider_event_id="kept").status, Event.Status.CONFIRMED)
        self.assertEqual(result.events_cancelled, 0)
        self.assertEqual(result.errors, [{
            "type": "ListingTruncated",
            "error": f"Event listing for {PRIMARY} truncated after 20 pages",
            "calendar_id": PRIMARY,
        }])
        self.calendar.refresh_from_db()
        self.assertIsNone(self.calendar.last_synced_at)

    def test_complete_listing_stamps_the_calendar(self):
        result = SyncResult(account_id=self.account.pk, trigger=SyncTrigger.CRON)
        self.assertTrue(apply_listing(self.calendar, EventListing(events=[]), result, window=self.window, now=self.now))
        self.calendar.refresh_from_db()
        self.assertEqual(self.calendar.last_synced_at, self.now)
        self.assertEqual(result.errors, [])

    def test_all_day_event_survives_the_end_of_its_utc_day(self):
        Calendar.objects.filter(pk=self.calendar.pk).update(timezone="Asia/Tokyo")
        self.calendar.refresh_from_db()
        holiday = ProviderEvent.from_payload(
            {"id": "holiday", "start": {"date": "2026-10-18"}, "end": {"date": "2026-10-19"}}
        )
        first = datetime(2026, 10, 17, 20, 0, tzinfo=dt_timezone.utc)
        result = SyncResult(account_id=self.account.pk, trigger=SyncTrigger.CRON)
        apply_listing(self.calendar, EventListing(events=[holiday]), result, window=(first, first + timedelta(days=30)), now=first)

        event = Event.objects.get(provider_event_id="holiday")
        self.assertEqual(event.start, datetime(2026, 10, 17, 15, 0, tzinfo=dt_timezone.utc))
        self.assertEqual(event.end, datetime(2026, 10, 18, 15, 0, tzinfo=dt_timezone.utc))

        # 05:00 on Oct 19 in Tokyo; the provider no longer lists the holiday.
        later = datetime(2026, 10, 18, 20, 0, tzinfo=dt_timezone.utc)
        apply_listing(self.calendar, EventListing(events=[]), result, window=(later, later + timedelta(days=30)), now=later)

        event.refresh_from_db()
        self.assertEqual(event.status, Event.Status.CONFIRMED)

    def test_events_outside_the_window_are_left_alone(self):
        far = self.now + timedelta(days=90)
        Event.objects.create(calendar=self.calendar, provider_event_id="far", start=far, end=far + timedelta(hours=1))
        result = SyncResult(account_id=self.account.pk, trigger=SyncTrigger.CRON)

        apply_listing(self.calendar, EventListing(events=[], complete=True), result, window=self.window)

        self.assertEqual(Event.objects.get(provider_event_id="kept").status, Event.Status.CANCELLED)
        self.assertEqual(Event.objects.get(provider_event_id="far").status, Event.Status.CONFIRMED)


class PipelineTests(TestCase):
    def setUp(self):
        cache.clear()
        self.account = make_account()

    @patch("notifications.services.dispatch_sync_notifications")
    @patch("webhooks.services.ensure_missing_watches")
    def test_successful_sync_registers_watches_and_notifies(self, mock_watches, mock_notify):
        client = FakeCalendarClient(self.account.pk)
        result = run_account_pipeline(self.account.pk, SyncTrigger.CRON, client=client)

        mock_watches.assert_called_once_with(self.account.pk, client=client)
        mock_notify.assert_called_once_with(result)

    @patch("notifications.services.dispatch_sync_notifications")
    @patch("webhooks.services.ensure_missing_watches", side_effect=ProviderServerError("watch failed"))
    def test_watch_failure_does_not_fail_the_sync(self, mock_watches, mock_notify):
        with self.assertLogs("calendars.services.pipeline", level="ERROR"):
            result = run_account_pipeline(self.account.pk, SyncTrigger.CRON, client=FakeCalendarClient(self.account.pk))

        self.assertEqual(result.status, SyncJob.Status.SUCCEEDED)
        mock_notify.assert_called_once()

    @patch("notifications.services.dispatch_sync_notifications")
    @patch("webhooks.services.ensure_missing_watches")
    def test_reauthorization_skips_watches_but_notifies(self, mock_watches, mock_notify):
        client = FakeCalendarClient(self.account.pk)
        client.token_manager.get_valid_access_token.side_effect = ReauthorizationRequired("revoked")

        result = run_account_pipeline(self.account.pk, SyncTrigger.CRON, client=client)

        mock_watches.assert_not_called()
        mock_notify.assert_called_once_with(result)
        self.assertTrue(result.reauthorization_required)


class BatchSchedulerTests(TestCase):
    def test_twenty_five_accounts_run_in_three_batches_despite_a_failure(self):
        accounts = [make_account(f"user{i}") for i in range(25)]
        failing = accounts[3]
        seen = []

        def fake_sync(account_id, trigger):
            seen.append(account_id)
            if account_id == failing.pk:
                raise ProviderServerError("provider exploded")
            return SyncResult(account_id=account_id, trigger=trigger, status=SyncJob.Status.SUCCEEDED)

        sleep = Mock()
        with self.assertLogs("calendars.services.scheduler", level="ERROR"):
            summary = run_batch_sync(accounts=accounts, batch_size=10, delay=1.5, sync=fake_sync, sleep=sleep)

        self.assertEqual(summary["batches"], 3)
        self.assertEqual(summary["processed"], 25)
        self.assertEqual(summary["succeeded"], 24)
        self.assertEqual(summary["failed"], 1)
        self.assertEqual(summary["errors"][0]["account_id"], failing.pk)
        self.assertEqual(seen, [account.pk for account in accounts])
        self.assertEqual(sleep.call_count, 2)
        sleep.assert_called_with(1.5)

    def test_coalesced_and_partial_results_are_counted(self):
        accounts = [make_account("one"), make_account("two")]
        statuses = {accounts[0].pk: SyncJob.Status.COALESCED, accounts[1].pk: SyncJob.Status.PARTIAL}

        summary = run_batch_sync(
            accounts=accounts,
            batch_size=10,
            delay=0,
            sync=lambda account_id, trigger: SyncResult(account_id=account_id, trigger=trigger, status=statuses[account_id]),
            sleep=Mock(),
        )

        self.assertEqual(summary["coalesced"], 1)
        self.assertEqual(summary["failed"], 1)

    def _covered(self, username, *, synced_ago, channel_expires_in=timedelta(days=5), **fields):
        account = make_account(username, last_synced_at=timezone.now() - synced_ago, **fields)
        calendar = Calendar.objects.create(
            account=account, provider_calendar_id=f"{username}@example.com", last_synced_at=timezone.now()
        )
        if channel_expires_in is not None:
            WebhookChannel.objects.create(
                calendar=calendar,
                channel_id=f"chan-{username}",
                resource_id=f"res-{username}",
                token="secret",
                expires_at=timezone.now() + channel_expires_in,
            )
        return account

    def test_due_selection(self):
        never = make_account("never")
        fresh = self._covered("fresh", synced_ago=timedelta(hours=1))
        stale = self._covered("stale", synced_ago=timedelta(hours=7))
        priority = self._covered("priority", synced_ago=timedelta(minutes=45), tier=ConnectedAccount.Tier.PRIORITY)
        unwatched = self._covered("unwatched", synced_ago=timedelta(hours=1), channel_expires_in=None)
        expired = self._covered("expired", synced_ago=timedelta(hours=1), channel_expires_in=timedelta(hours=-1))
        revoked = make_account("revoked", status=ConnectedAccount.Status.REVOKED)
        cooling = make_account("cooling", sync_cooldown_until=timezone.now() + timedelta(minutes=10))

        due = select_due_accounts()

        self.assertEqual(due[0], never)
        self.assertEqual(set(due), {never, stale, priority, unwatched, expired})
        self.assertNotIn(fresh, due)
        self.assertNotIn(revoked, due)
        self.assertNotIn(cooling, due)
        self.assertEqual(len(due), len(set(due)))

    def test_dry_run_command_lists_due_accounts(self):
        make_account("never")
        out = StringIO()
        call_command("sync_calendars", "--dry-run", stdout=out)
        self.assertIn("1 account(s) due", out.getvalue())


def api_response(status_code, payload=None, headers=None):
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.content = b"{}" if payload is not None else b""
    response.text = ""
    response.json.return_value = payload if payload is not None else {}
    return response


def api_error(status_code, reason="", message="error", headers=None):
    return api_response(
        status_code,
        {"error": {"code": status_code, "message": message, "errors": [{"reason": reason}] if reason else []}},
        headers=headers,
    )


@override_settings(**NO_BACKOFF)
class CalendarClientTests(SimpleTestCase):
    def setUp(self):
        self.tokens = Mock()
        self.tokens.get_valid_access_token.return_value = "tok"
        self.tokens.force_refresh.return_value = "tok2"
        self.session = Mock()
        self.client = CalendarClient(7, token_manager=self.tokens, session=self.session, timeout=5)

    def test_unauthorized_forces_one_refresh_and_retries(self):
        self.session.request.side_effect = [
            api_error(401, message="Invalid Credentials"),
            api_response(200, {"items": [{"id": PRIMARY, "summary": "Me", "primary": True}]}),
        ]

        calendars = self.client.list_calendars()

        self.assertEqual(calendars, [ProviderCalendar(id=PRIMARY, name="Me", is_primary=True)])
        self.tokens.force_refresh.assert_called_once_with(7, rejected_token="tok")
        self.assertEqual(self.session.request.call_args.kwargs["headers"]["Authorization"], "Bearer tok2")

    def test_second_unauthorized_raises_auth_error(self):
        self.session.request.side_effect = [api_error(401), api_error(401)]
        with self.assertRaises(AuthError):
            self.client.list_calendars()
        self.assertEqual(self.session.request.call_count, 2)

    def test_rate_limit_is_retried_then_raised_with_retry_after(self):
        self.session.request.return_value = api_error(429, reason="rateLimitExceeded", headers={"Retry-After": "30"})

        with self.assertRaises(RateLimitedError) as ctx:
            self.client.list_calendars()

        self.assertEqual(ctx.exception.retry_after, timedelta(seconds=30))
        self.assertEqual(self.session.request.call_count, 3)
        self.tokens.force_refresh.assert_not_called()

    def test_forbidden_rate_limit_is_not_treated_as_auth_failure(self):
        self.session.request.side_effect = [
            api_error(403, reason="userRateLimitExceeded"),
            api_response(200, {"items": []}),
        ]
        self.assertEqual(self.client.list_calendars(), [])
        self.tokens.force_refresh.assert_not_called()

    def test_server_errors_are_retried(self):
        self.session.request.side_effect = [api_error(503, reason="backendError"), api_response(200, {"items": []})]
        self.assertEqual(self.client.list_calendars(), [])
        self.assertEqual(self.session.request.call_count, 2)

    def test_transport_errors_become_server_errors(self):
        self.session.request.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(ProviderServerError):
            self.client.list_calendars()
        self.assertEqual(self.session.request.call_count, 3)

    def test_not_found_is_not_retried(self):
        self.session.request.return_value = api_error(404, reason="notFound")
        with self.assertRaises(ProviderNotFoundError):
            self.client.update_event(PRIMARY, "missing", {"summary": "x"})
        self.assertEqual(self.session.request.call_count, 1)

    def test_other_client_errors_map_to_provider_error(self):
        self.session.request.return_value = api_error(400, reason="invalid", message="Bad Request")
        with self.assertRaises(ProviderError) as ctx:
            self.client.create_event(PRIMARY, {})
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertNotIsInstance(ctx.exception, ProviderServerError)

    def test_list_events_follows_pages(self):
        start = "2026-10-20T09:00:00Z"
        end = "2026-10-20T10:00:00Z"
        self.session.request.side_effect = [
            api_response(200, {"items": [{"id": "a", "start": {"dateTime": start}, "end": {"dateTime": end}}], "nextPageToken": "p2"}),
            api_response(200, {"items": [{"id": "b", "status": "cancelled"}]}),
        ]
        now = timezone.now()

        listing = self.client.list_events(PRIMARY, now, now + timedelta(days=30))

        self.assertTrue(listing.complete)
        self.assertEqual(listing.pages, 2)
        self.assertEqual([item.id for item in listing.events], ["a", "b"])
        self.assertTrue(listing.events[1].is_cancelled)
        params = self.session.request.call_args.kwargs["params"]
        self.assertEqual(params["pageToken"], "p2")
        self.assertEqual(params["showDeleted"], "true")
        self.assertIn("primary%40example.com", self.session.request.call_args.args[1])

    @override_settings(CALENDAR_MAX_PAGES=1)
    def test_list_events_reports_truncation(self):
        self.session.request.return_value = api_response(200, {"items": [], "nextPageToken": "more"})
        now = timezone.now()

        with self.assertLogs("calendars.client", level="WARNING"):
            listing = self.client.list_events(PRIMARY, now, now + timedelta(days=1))

        self.assertFalse(listing.complete)

    def test_watch_channel_parses_expiration(self):
        self.session.request.return_value = api_response(
            200, {"id": "chan", "resourceId": "res", "resourceUri": "uri", "expiration": "1791000000000"}
        )
        registration = self.client.watch_channel(PRIMARY, "chan", "https://example.com/hook", "secret", timedelta(days=7))

        self.assertEqual(registration.resource_id, "res")
        self.assertEqual(registration.expires_at, datetime.fromtimestamp(1791000000, tz=dt_timezone.utc))
        body = self.session.request.call_args.kwargs["json"]
        self.assertEqual(body["params"], {"ttl": "604800"})
        self.assertEqual(body["token"], "secret")

    def test_stop_unknown_channel_returns_false(self):
        self.session.request.return_value = api_error(404)
        self.assertFalse(self.client.stop_channel("chan", "res"))


class ProviderEventParsingTests(SimpleTestCase):
    def test_all_day_event(self):
        item = ProviderEvent.from_payload(
            {"id": "holiday", "summary": "Holiday", "start": {"date": "2026-12-25"}, "end": {"date": "2026-12-26"}}
        )
        self.assertTrue(item.is_all_day)
        self.assertEqual(item.start, datetime(2026, 12, 25, tzinfo=dt_timezone.utc))
        self.assertEqual(item.end, datetime(2026, 12, 26, tzinfo=dt_timezone.utc))

    def test_all_day_dates_resolve_in_calendar_zone(self):
        item = ProviderEvent.from_payload(
            {"id": "holiday", "start": {"date": "2026-12-25"}, "end": {"date": "2026-12-27"}}
        )
        start, end = item.times_in(ZoneInfo("America/New_York"))
        self.assertEqual(start, datetime(2026, 12, 25, 5, tzinfo=dt_timezone.utc))
        self.assertEqual(end, datetime(2026, 12, 27, 5, tzinfo=dt_timezone.utc))

    def test_timed_events_ignore_the_zone(self):
        item = ProviderEvent.from_payload(
            {"id": "call", "start": {"dateTime": "2026-10-20T09:00:00Z"}, "end": {"dateTime": "2026-10-20T10:00:00Z"}}
        )
        self.assertEqual(item.times_in(ZoneInfo("Asia/Tokyo")), (item.start, item.end))

    def test_tentative_counts_as_confirmed(self):
        item = ProviderEvent.from_payload(
            {"id": "maybe", "status": "tentative", "start": {"dateTime": "2026-10-20T09:00:00+02:00"}}
        )
        self.assertFalse(item.is_cancelled)
        self.assertEqual(item.start, item.end)
        self.assertEqual(item.start, datetime(2026, 10, 20, 7, tzinfo=dt_timezone.utc))


class EventWriteThroughTests(TestCase):
    def setUp(self):
        self.account = make_account()
        self.calendar = Calendar.objects.create(account=self.account, provider_calendar_id=PRIMARY)
        self.start = (timezone.now() + timedelta(days=1)).replace(microsecond=0)
        self.event = Event.objects.create(
            calendar=self.calendar,
            provider_event_id="e1",
            title="Draft",
            start=self.start,
            end=self.start + timedelta(hours=1),
        )

    def test_create_event_stores_provider_row(self):
        client = Mock()
        client.create_event.return_value = provider_event("new-1", self.start, title="Lunch")

        event = create_event(self.calendar, {"title": "Lunch", "start": self.start, "end": self.start + timedelta(hours=1)}, client=client)

        self.assertEqual(event.provider_event_id, "new-1")
        self.assertEqual(event.title, "Lunch")
        body = client.create_event.call_args.args[1]
        self.assertEqual(body["summary"], "Lunch")
        self.assertIn("dateTime", body["start"])

    def test_successful_push_clears_local_mark(self):
        client = Mock()
        client.update_event.return_value = provider_event("e1", self.start, title="Final")

        event, pushed = update_event(self.event, {"title": "Final"}, client=client)

        self.assertTrue(pushed)
        self.assertIsNone(event.local_modified_at)
        client.update_event.assert_called_once_with(PRIMARY, "e1", {"summary": "Final"})

    def test_all_day_edit_sends_calendar_local_dates(self):
        Calendar.objects.filter(pk=self.calendar.pk).update(timezone="Asia/Tokyo")
        self.calendar.refresh_from_db()
        client = Mock()
        client.update_event.side_effect = ProviderServerError("down")
        # Midnight of Oct 18 in Tokyo.
        start = datetime(2026, 10, 17, 15, 0, tzinfo=dt_timezone.utc)

        update_event(self.event, {"start": start, "end": start + timedelta(days=1), "is_all_day": True}, client=client)

        body = client.update_event.call_args.args[2]
        self.assertEqual(body["start"], {"date": "2026-10-18"})
        self.assertEqual(body["end"], {"date": "2026-10-19"})

    def test_failed_push_keeps_local_edit_marked(self):
        client = Mock()
        client.update_event.side_effect = ProviderServerError("down")

        event, pushed = update_event(self.event, {"title": "Offline edit"}, client=client)

        self.assertFalse(pushed)
        event.refresh_from_db()
        self.assertEqual(event.title, "Offline edit")
        self.assertIsNotNone(event.local_modified_at)


class CalendarApiTests(TestCase):
    def setUp(self):
        cache.clear()
        self.account = make_account()
        self.calendar = Calendar.objects.create(account=self.account, provider_calendar_id=PRIMARY, name="Primary")
        self.start = (timezone.now() + timedelta(days=1)).replace(microsecond=0)
        self.event = Event.objects.create(
            calendar=self.calendar, provider_event_id="e1", title="Standup", start=self.start, end=self.start + timedelta(hours=1)
        )
        Event.objects.create(
            calendar=self.calendar,
            provider_event_id="e2",
            title="Gone",
            start=self.start,
            end=self.start + timedelta(hours=1),
            status=Event.Status.CANCELLED,
        )
        self.api = APIClient()
        self.api.force_authenticate(self.account.user)

    def _items(self, response):
        return response.data["results"] if isinstance(response.data, dict) else response.data

    def test_calendar_list_is_scoped_to_user(self):
        other = make_account("bob")
        Calendar.objects.create(account=other, provider_calendar_id="bob@example.com")

        response = self.api.get(reverse("calendars:calendar-list"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["id"] for item in self._items(response)], [self.calendar.pk])
        self.assertFalse(self._items(response)[0]["has_active_watch"])

    def test_event_list_hides_cancelled_by_default(self):
        url = reverse("calendars:calendar-events", args=[self.calendar.pk])

        active = self._items(self.api.get(url))
        everything = self._items(self.api.get(url, {"include_cancelled": "true"}))

        self.assertEqual([item["provider_event_id"] for item in active], ["e1"])
        self.assertEqual(len(everything), 2)

    def test_event_list_rejects_bad_window(self):
        response = self.api.get(reverse("calendars:calendar-events", args=[self.calendar.pk]), {"start": "yesterday"})
        self.assertEqual(response.status_code, 400)

    @patch("calendars.services.events.CalendarClient")
    def test_create_event_returns_created(self, mock_client_cls):
        mock_client_cls.return_value.create_event.return_value = provider_event("new-1", self.start, title="Lunch")

        response = self.api.post(
            reverse("calendars:calendar-events", args=[self.calendar.pk]),
            {"title": "Lunch", "start": self.start.isoformat(), "end": (self.start + timedelta(hours=1)).isoformat()},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertTrue(Event.objects.filter(provider_event_id="new-1").exists())

    @patch("calendars.services.events.CalendarClient")
    def test_create_event_reports_provider_failure(self, mock_client_cls):
        mock_client_cls.return_value.create_event.side_effect = ProviderServerError("down")

        response = self.api.post(
            reverse("calendars:calendar-events", args=[self.calendar.pk]),
            {"title": "Lunch", "start": self.start.isoformat(), "end": (self.start + timedelta(hours=1)).isoformat()},
            format="json",
        )

        self.assertEqual(response.status_code, 502)
        self.assertFalse(Event.objects.filter(title="Lunch").exists())

    @patch("calendars.services.events.CalendarClient")
    def test_event_edit_is_accepted_when_provider_is_down(self, mock_client_cls):
        mock_client_cls.return_value.update_event.side_effect = ProviderServerError("down")

        response = self.api.patch(
            reverse("calendars:event-detail", args=[self.event.pk]), {"title": "Renamed"}, format="json"
        )

        self.assertEqual(response.status_code, 202)
        self.assertFalse(response.data["pushed"])
        self.event.refresh_from_db()
        self.assertEqual(self.event.title, "Renamed")

    @patch("calendars.views.request_account_sync", return_value=True)
    def test_manual_sync_queues_every_active_account(self, mock_request):
        response = self.api.post(reverse("calendars:manual-sync"), {}, format="json")

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.data["queued"], [self.account.pk])
        mock_request.assert_called_once_with(self.account.pk, trigger=SyncTrigger.MANUAL)

    @patch("webhooks.tasks.stop_watch_task")
    def test_disabling_calendar_stops_its_watch(self, mock_stop):
        response = self.api.patch(
            reverse("calendars:calendar-detail", args=[self.calendar.pk]), {"sync_enabled": False}, format="json"
        )

        self.assertEqual(response.status_code, 200)
        mock_stop.delay.assert_called_once_with(self.calendar.pk)

    def test_sync_job_history(self):
        SyncJob.objects.create(account=self.account, trigger=SyncTrigger.CRON, status=SyncJob.Status.SUCCEEDED)
        response = self.api.get(reverse("calendars:sync-job-list"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self._items(response)[0]["status"], "succeeded")


class SyncTriggerTests(TestCase):
    def setUp(self):
        cache.clear()
        self.account = make_account()

    @patch("calendars.tasks.sync_account_task")
    def test_only_one_sync_is_queued_per_account(self, mock_task):
        self.assertTrue(request_account_sync(self.account.pk, SyncTrigger.WEBHOOK))
        self.assertFalse(request_account_sync(self.account.pk, SyncTrigger.WEBHOOK))
        mock_task.delay.assert_called_once_with(self.account.pk, "webhook")

    @patch("calendars.tasks.sync_account_task")
    def test_enqueue_failure_releases_marker(self, mock_task):
        mock_task.delay.side_effect = ConnectionError("broker down")
        with self.assertLogs("calendars.services.triggers", level="ERROR"):
            with self.assertRaises(ConnectionError):
                request_account_sync(self.account.pk)
        self.assertIsNone(cache.get(pending_key(self.account.pk)))

    @patch("calendars.tasks.run_account_pipeline")
    def test_task_clears_pending_marker_before_running(self, mock_pipeline):
        cache.set(pending_key(self.account.pk), "webhook")
        mock_pipeline.return_value = SyncResult(
            account_id=self.account.pk, trigger=SyncTrigger.WEBHOOK, status=SyncJob.Status.SUCCEEDED
        )

        summary = sync_account_task(self.account.pk, "webhook")

        self.assertIsNone(cache.get(pending_key(self.account.pk)))
        self.assertEqual(summary["status"], "succeeded")
        mock_pipeline.assert_called_once_with(self.account.pk, "webhook")

    def test_prune_removes_old_jobs_and_tombstones(self):
        old = timezone.now() - timedelta(days=60)
        SyncJob.objects.create(account=self.account, trigger=SyncTrigger.CRON, status=SyncJob.Status.SUCCEEDED, started_at=old)
        SyncJob.objects.create(account=self.account, trigger=SyncTrigger.CRON, status=SyncJob.Status.RUNNING, started_at=old)
        SyncJob.objects.create(account=self.account, trigger=SyncTrigger.CRON, status=SyncJob.Status.SUCCEEDED)
        calendar = Calendar.objects.create(account=self.account, provider_calendar_id=PRIMARY)
        Event.objects.create(
            calendar=calendar, provider_event_id="old", start=old, end=old, status=Event.Status.CANCELLED, cancelled_at=old
        )
        Event.objects.create(calendar=calendar, provider_event_id="live", start=old, end=old)

        summary = prune_sync_history_task()

        self.assertEqual(summary, {"sync_jobs": 1, "events": 1})
        self.assertEqual(SyncJob.objects.count(), 2)
        self.assertTrue(Event.objects.filter(provider_event_id="live").exists())
