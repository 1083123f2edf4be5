from datetime import timedelta
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from accounts.models import ConnectedAccount
from calendars.client import ChannelRegistration
from calendars.models import Calendar
from common.choices import SyncTrigger
from common.exceptions import ProviderServerError
from webhooks.models import WebhookChannel
from webhooks.services import (
    NotificationOutcome,
    ensure_missing_watches,
    ensure_watch,
    handle_notification,
    renew_expiring,
    stop_watch,
)
from webhooks.tasks import ensure_watch_task


def make_calendar(username="alice", **calendar_fields):
    user = get_user_model().objects.create_user(username=username, password="secret")
    account = ConnectedAccount.objects.create(user=user, provider="google")
    return Calendar.objects.create(
        account=account,
        provider_calendar_id=f"{username}@example.com",
        **calendar_fields,
    )


def make_channel(calendar, *, expires_in=timedelta(days=5), **fields):
    values = {
        "channel_id": f"chan-{calendar.pk}",
        "resource_id": f"res-{calendar.pk}",
        "token": "channel-secret",
        "expires_at": timezone.now() + expires_in,
    }
    values.update(fields)
    return WebhookChannel.objects.create(calendar=calendar, **values)


def fake_watch_client():
    client = Mock()

    def watch(calendar_id, channel_id, address, token, ttl):
        return ChannelRegistration(
            channel_id=channel_id,
            resource_id=f"res-{channel_id[:8]}",
            expires_at=timezone.now() + ttl,
            resource_uri=f"https://www.googleapis.com/calendar/v3/calendars/{calendar_id}/events",
        )

    client.watch_channel.side_effect = watch
    client.stop_channel.return_value = True
    return client


@patch("calendars.services.triggers.request_account_sync", return_value=True)
class HandleNotificationTests(TestCase):
    def setUp(self):
        self.calendar = make_calendar()
        self.channel = make_channel(self.calendar)

    def notify(self, **overrides):
        values = {
            "channel_id": self.channel.channel_id,
            "resource_id": self.channel.resource_id,
            "resource_state": "exists",
            "message_number": "2",
            "token": "channel-secret",
        }
        values.update(overrides)
        return handle_notification(**values)

    def test_handshake_never_triggers_a_sync(self, mock_request):
        outcome = self.notify(resource_state="sync", message_number="1")

        self.assertEqual(outcome, NotificationOutcome.HANDSHAKE)
        mock_request.assert_not_called()
        self.channel.refresh_from_db()
        self.assertIsNotNone(self.channel.handshake_received_at)
        self.assertEqual(self.channel.last_message_number, 1)

    def test_change_notification_requests_webhook_sync(self, mock_request):
        outcome = self.notify()

        self.assertEqual(outcome, NotificationOutcome.SYNC_REQUESTED)
        mock_request.assert_called_once_with(self.calendar.account_id, trigger=SyncTrigger.WEBHOOK)
        self.channel.refresh_from_db()
        self.assertEqual(self.channel.last_message_number, 2)
        self.assertIsNotNone(self.channel.last_notified_at)

    def test_already_queued_sync_is_reported(self, mock_request):
        mock_request.return_value = False
        self.assertEqual(self.notify(), NotificationOutcome.SYNC_ALREADY_PENDING)

    def test_redelivered_message_is_dropped(self, mock_request):
        self.notify(message_number="5")
        outcome = self.notify(message_number="5")

        self.assertEqual(outcome, NotificationOutcome.DUPLICATE)
        self.assertEqual(mock_request.call_count, 1)

    def test_unknown_channel_is_dropped(self, mock_request):
        with self.assertLogs("webhooks.services", level="WARNING"):
            outcome = self.notify(channel_id="nobody")
        self.assertEqual(outcome, NotificationOutcome.UNKNOWN_CHANNEL)
        mock_request.assert_not_called()

    def test_resource_mismatch_is_stale(self, mock_request):
        with self.assertLogs("webhooks.services", level="WARNING"):
            outcome = self.notify(resource_id="old-resource")
        self.assertEqual(outcome, NotificationOutcome.STALE_CHANNEL)
        mock_request.assert_not_called()

    def test_expired_channel_is_stale(self, mock_request):
        WebhookChannel.objects.filter(pk=self.channel.pk).update(expires_at=timezone.now() - timedelta(minutes=1))
        self.assertEqual(self.notify(), NotificationOutcome.STALE_CHANNEL)
        mock_request.assert_not_called()

    def test_wrong_token_is_rejected(self, mock_request):
        with self.assertLogs("webhooks.services", level="WARNING"):
            outcome = self.notify(token="guess")
        self.assertEqual(outcome, NotificationOutcome.TOKEN_MISMATCH)
        mock_request.assert_not_called()

    def test_disabled_account_is_not_synced(self, mock_request):
        ConnectedAccount.objects.filter(pk=self.calendar.account_id).update(sync_enabled=False)
        self.assertEqual(self.notify(), NotificationOutcome.SYNC_DISABLED)
        mock_request.assert_not_called()


class ChannelLifecycleTests(TestCase):
    def setUp(self):
        self.calendar = make_calendar()

    def test_ensure_watch_creates_single_channel(self):
        client = fake_watch_client()

        channel = ensure_watch(self.calendar, client=client)

        self.assertEqual(WebhookChannel.objects.filter(calendar=self.calendar).count(), 1)
        self.assertEqual(len(channel.channel_id), 32)
        registered_token = client.watch_channel.call_args.args[3]
        self.assertEqual(WebhookChannel.objects.get(pk=channel.pk).token, registered_token)
        client.stop_channel.assert_not_called()

    def test_renewing_channel_expiring_in_23_hours_leaves_exactly_one(self):
        old = make_channel(self.calendar, expires_in=timedelta(hours=23))
        client = fake_watch_client()

        summary = renew_expiring(client_factory=lambda account_id: client)

        self.assertEqual(summary["renewed"], 1)
        channels = WebhookChannel.objects.filter(calendar=self.calendar)
        self.assertEqual(channels.count(), 1)
        renewed = channels.get()
        self.assertNotEqual(renewed.channel_id, old.channel_id)
        self.assertGreater(renewed.expires_at, timezone.now() + timedelta(days=6))
        self.assertIsNone(renewed.handshake_received_at)
        client.stop_channel.assert_called_once_with(old.channel_id, old.resource_id)

    def test_failed_renewal_keeps_the_old_channel(self):
        old = make_channel(self.calendar, expires_in=timedelta(hours=23))
        client = fake_watch_client()
        client.watch_channel.side_effect = ProviderServerError("unavailable")

        with self.assertLogs("webhooks.services", level="ERROR"):
            summary = renew_expiring(client_factory=lambda account_id: client)

        self.assertEqual(summary["failed"], 1)
        self.assertEqual(list(WebhookChannel.objects.filter(calendar=self.calendar)), [old])
        client.stop_channel.assert_not_called()

    def test_stop_failure_after_swap_still_leaves_one_channel(self):
        make_channel(self.calendar, expires_in=timedelta(hours=2))
        client = fake_watch_client()
        client.stop_channel.side_effect = ProviderServerError("unavailable")

        summary = renew_expiring(client_factory=lambda account_id: client)

        self.assertEqual(summary["renewed"], 1)
        self.assertEqual(WebhookChannel.objects.filter(calendar=self.calendar).count(), 1)

    def test_one_client_per_account_during_renewal(self):
        make_channel(self.calendar, expires_in=timedelta(hours=3))
        other = Calendar.objects.create(account=self.calendar.account, provider_calendar_id="team@example.com")
        make_channel(other, expires_in=timedelta(hours=4))
        client = fake_watch_client()
        factory = Mock(return_value=client)

        summary = renew_expiring(client_factory=factory)

        self.assertEqual(summary["renewed"], 2)
        factory.assert_called_once_with(self.calendar.account_id)
        client.close.assert_called_once_with()

    def test_channels_outside_renewal_window_are_left_alone(self):
        make_channel(self.calendar, expires_in=timedelta(days=3))
        client = fake_watch_client()

        summary = renew_expiring(client_factory=lambda account_id: client)

        self.assertEqual(summary["renewed"], 0)
        client.watch_channel.assert_not_called()

    def test_disabled_calendar_channel_is_stopped_not_renewed(self):
        self.calendar.sync_enabled = False
        self.calendar.save()
        channel = make_channel(self.calendar, expires_in=timedelta(hours=5))
        client = fake_watch_client()

        summary = renew_expiring(client_factory=lambda account_id: client)

        self.assertEqual(summary["stopped"], 1)
        self.assertFalse(WebhookChannel.objects.filter(calendar=self.calendar).exists())
        client.stop_channel.assert_called_once_with(channel.channel_id, channel.resource_id)
        client.watch_channel.assert_not_called()

    def test_stop_watch_without_channel(self):
        self.assertFalse(stop_watch(self.calendar, client=fake_watch_client()))

    def test_missing_watches_are_registered(self):
        covered = Calendar.objects.create(account=self.calendar.account, provider_calendar_id="covered@example.com")
        make_channel(covered)
        Calendar.objects.create(account=self.calendar.account, provider_calendar_id="off@example.com", sync_enabled=False)
        client = fake_watch_client()

        registered = ensure_missing_watches(self.calendar.account_id, client=client)

        self.assertEqual(registered, 1)
        self.assertTrue(WebhookChannel.objects.filter(calendar=self.calendar).exists())
        self.assertFalse(WebhookChannel.objects.filter(calendar__provider_calendar_id="off@example.com").exists())

    @patch("webhooks.tasks.ensure_watch", side_effect=ProviderServerError("down"))
    def test_watch_task_swallows_provider_errors(self, mock_ensure):
        with self.assertLogs("webhooks.tasks", level="ERROR"):
            self.assertFalse(ensure_watch_task(self.calendar.pk))


class WebhookEndpointTests(TestCase):
    def setUp(self):
        self.calendar = make_calendar()
        self.channel = make_channel(self.calendar)
        self.api = APIClient()
        self.url = reverse("webhooks:google-calendar")

    def test_missing_headers_are_rejected(self):
        response = self.api.post(self.url)
        self.assertEqual(response.status_code, 400)

    @patch("calendars.services.triggers.request_account_sync")
    def test_handshake_is_acknowledged(self, mock_request):
        response = self.api.post(
            self.url,
            HTTP_X_GOOG_CHANNEL_ID=self.channel.channel_id,
            HTTP_X_GOOG_RESOURCE_ID=self.channel.resource_id,
            HTTP_X_GOOG_RESOURCE_STATE="sync",
            HTTP_X_GOOG_MESSAGE_NUMBER="1",
            HTTP_X_GOOG_CHANNEL_TOKEN="channel-secret",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, {"status": "handshake"})
        mock_request.assert_not_called()

    def test_unknown_channel_is_still_acknowledged(self):
        with self.assertLogs("webhooks.services", level="WARNING"):
            response = self.api.post(
                self.url,
                HTTP_X_GOOG_CHANNEL_ID="gone",
                HTTP_X_GOOG_RESOURCE_ID="res",
                HTTP_X_GOOG_RESOURCE_STATE="exists",
            )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "unknown_channel")
