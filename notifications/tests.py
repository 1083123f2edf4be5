from datetime import datetime, time, timedelta, timezone as dt_timezone
from unittest.mock import AsyncMock, Mock, patch
from zoneinfo import ZoneInfo

import requests
from asgiref.sync import async_to_sync
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from accounts.models import ConnectedAccount
from calendars.models import Calendar, Event, SyncJob
from calendars.services.sync import SyncResult
from common.choices import SyncTrigger
from common.exceptions import DeliveryTransientError
from notifications import push
from notifications.middleware import JWTAuthMiddleware
from notifications.models import Notification, NotificationPreference, PushToken
from notifications.push import DeliveryReceipt, DeliveryStatus, PushMessage
from notifications.routing import websocket_urlpatterns
from notifications.services import (
    dispatch_due_reminders,
    dispatch_sync_notifications,
    notify_reconnect_required,
    send_daily_digests,
    send_push_to_user,
)

NO_BACKOFF = dict(
    PROVIDER_MAX_ATTEMPTS=3,
    PROVIDER_RETRY_INITIAL_DELAY=0,
    PROVIDER_RETRY_MAX_DELAY=0,
    PROVIDER_RETRY_JITTER=0,
)


def make_user_with_calendar(username="alice"):
    user = get_user_model().objects.create_user(username=username, password="secret")
    account = ConnectedAccount.objects.create(user=user, provider="google")
    calendar = Calendar.objects.create(account=account, provider_calendar_id=f"{username}@example.com")
    return user, account, calendar


def make_event(calendar, event_id, start, **fields):
    return Event.objects.create(
        calendar=calendar,
        provider_event_id=event_id,
        title=fields.pop("title", event_id),
        start=start,
        end=fields.pop("end", start + timedelta(hours=1)),
        **fields,
    )


def receipts_for(messages, status=DeliveryStatus.OK):
    return [DeliveryReceipt(token=message.token, status=status) for message in messages]


class PushTransportTests(SimpleTestCase):
    def tearDown(self) -> None:
        push.get_push_transport.cache_clear()

    @override_settings(PUSH_PROVIDER="console")
    def test_console_transport_writes_to_stdout(self):
        push.get_push_transport.cache_clear()

        with patch("notifications.push.print") as mock_print:
            receipts = push.get_push_transport().send([PushMessage(token="ExponentPushToken[a]", title="Hi", body="There")])

        mock_print.assert_called_once_with("Sending push to ExponentPushToken[a]: Hi - There")
        self.assertEqual(receipts[0].status, DeliveryStatus.OK)

    @override_settings(PUSH_PROVIDER="carrier-pigeon")
    def test_unknown_provider_is_rejected(self):
        push.get_push_transport.cache_clear()
        with self.assertRaises(push.PushConfigurationError):
            push.get_push_transport()

    @patch("notifications.push.requests.post")
    def test_expo_marks_unregistered_devices(self, mock_post):
        mock_post.return_value = Mock(status_code=200)
        mock_post.return_value.json.return_value = {
            "data": [
                {"status": "ok", "id": "ticket-1"},
                {"status": "error", "message": "not registered", "details": {"error": "DeviceNotRegistered"}},
                {"status": "error", "message": "too big", "details": {"error": "MessageTooBig"}},
            ]
        }
        transport = push.ExpoPushTransport(url="https://push.example.com", access_token="expo-token")

        receipts = transport.send([PushMessage(token=t, title="T", body="B") for t in ("a", "b", "c")])

        self.assertEqual([r.status for r in receipts], [DeliveryStatus.OK, DeliveryStatus.TOKEN_INVALID, DeliveryStatus.ERROR])
        headers = mock_post.call_args.kwargs["headers"]
        self.assertEqual(headers["Authorization"], "Bearer expo-token")

    @override_settings(**NO_BACKOFF)
    @patch("notifications.push.requests.post")
    def test_expo_outage_is_retried_then_reported(self, mock_post):
        mock_post.return_value = Mock(status_code=503)
        transport = push.ExpoPushTransport(url="https://push.example.com")

        with self.assertLogs("notifications.push", level="ERROR"):
            receipts = transport.send([PushMessage(token="a", title="T", body="B")])

        self.assertEqual(mock_post.call_count, 3)
        self.assertEqual(receipts[0].status, DeliveryStatus.ERROR)
        self.assertIn("503", receipts[0].message)

    @override_settings(**NO_BACKOFF)
    @patch("notifications.push.requests.post", side_effect=requests.Timeout("slow"))
    def test_expo_timeout_is_retried(self, mock_post):
        transport = push.ExpoPushTransport(url="https://push.example.com")

        with self.assertLogs("notifications.push", level="ERROR"):
            receipts = transport.send([PushMessage(token="a", title="T", body="B")])

        self.assertEqual(mock_post.call_count, 3)
        self.assertEqual(receipts[0].status, DeliveryStatus.ERROR)

    @override_settings(**NO_BACKOFF)
    @patch("notifications.push.requests.post")
    def test_expo_retries_only_the_failing_batch(self, mock_post):
        def respond(url, json, headers, timeout):
            token = json[0]["to"]
            if token == "b" and failures.pop():
                return Mock(status_code=503)
            response = Mock(status_code=200)
            response.json.return_value = {"data": [{"status": "ok"}]}
            return response

        failures = [False, True, True]
        mock_post.side_effect = respond
        transport = push.ExpoPushTransport(url="https://push.example.com")
        transport.batch_size = 1

        receipts = transport.send([PushMessage(token=t, title="T", body="B") for t in ("a", "b")])

        sent = [call.kwargs["json"][0]["to"] for call in mock_post.call_args_list]
        self.assertEqual(sent, ["a", "b", "b", "b"])
        self.assertEqual([r.status for r in receipts], [DeliveryStatus.OK, DeliveryStatus.OK])


class QuietHoursTests(SimpleTestCase):
    def at(self, hour, minute=0):
        return datetime(2026, 10, 20, hour, minute, tzinfo=dt_timezone.utc)

    def test_window_wrapping_midnight(self):
        preference = NotificationPreference(quiet_hours_start=time(22), quiet_hours_end=time(7))
        self.assertTrue(preference.in_quiet_hours(self.at(23, 30)))
        self.assertTrue(preference.in_quiet_hours(self.at(6, 59)))
        self.assertFalse(preference.in_quiet_hours(self.at(7)))
        self.assertFalse(preference.in_quiet_hours(self.at(12)))

    def test_same_day_window(self):
        preference = NotificationPreference(quiet_hours_start=time(13), quiet_hours_end=time(14))
        self.assertTrue(preference.in_quiet_hours(self.at(13, 15)))
        self.assertFalse(preference.in_quiet_hours(self.at(14, 1)))

    def test_window_uses_local_time(self):
        preference = NotificationPreference(
            quiet_hours_start=time(22), quiet_hours_end=time(7), timezone="Asia/Tokyo"
        )
        # 14:00 UTC is 23:00 in Tokyo.
        self.assertTrue(preference.in_quiet_hours(self.at(14)))
        self.assertFalse(preference.in_quiet_hours(self.at(3)))

    def test_unset_or_unknown_zone(self):
        self.assertFalse(NotificationPreference().in_quiet_hours(self.at(3)))
        preference = NotificationPreference(timezone="Mars/Olympus")
        self.assertEqual(str(preference.tzinfo), "UTC")


@override_settings(**NO_BACKOFF)
class SendPushTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="pushy", password="secret")
        PushToken.objects.create(user=self.user, token="good", platform=PushToken.Platform.IOS)
        PushToken.objects.create(user=self.user, token="stale", platform=PushToken.Platform.ANDROID)
        self.transport = Mock()
        patcher = patch("notifications.services.get_push_transport", return_value=self.transport)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_unregistered_tokens_are_pruned(self):
        self.transport.send.side_effect = lambda messages: [
            DeliveryReceipt(
                token=message.token,
                status=DeliveryStatus.TOKEN_INVALID if message.token == "stale" else DeliveryStatus.OK,
            )
            for message in messages
        ]

        result = send_push_to_user(self.user, title="Hello", message="World")

        self.assertEqual(result.push_sent, 1)
        self.assertEqual(len(result.invalid_tokens), 1)
        self.assertEqual(list(PushToken.objects.filter(user=self.user).values_list("token", flat=True)), ["good"])
        self.assertIsNotNone(PushToken.objects.get(token="good").last_used_at)
        result.notification.refresh_from_db()
        self.assertTrue(result.notification.pushed)

    def test_failed_batches_are_reported_without_a_second_send(self):
        self.transport.send.side_effect = lambda messages: receipts_for(messages, DeliveryStatus.ERROR)

        result = send_push_to_user(self.user, title="Hello", message="World")

        self.assertEqual(self.transport.send.call_count, 1)
        self.assertEqual(result.push_sent, 0)
        self.assertIsNotNone(result.push_error)
        self.assertEqual(PushToken.objects.filter(user=self.user).count(), 2)

    def test_transport_outage_keeps_in_app_notification(self):
        self.transport.send.side_effect = DeliveryTransientError("still down")

        with self.assertLogs("notifications.services", level="ERROR"):
            result = send_push_to_user(self.user, title="Hello", message="World")

        self.assertEqual(self.transport.send.call_count, 1)
        self.assertIsInstance(result.push_error, DeliveryTransientError)
        self.assertTrue(Notification.objects.filter(pk=result.notification.pk, pushed=False).exists())

    def test_quiet_hours_suppress_push_only(self):
        NotificationPreference.objects.create(
            user=self.user, quiet_hours_start=time(22), quiet_hours_end=time(7), timezone="UTC"
        )
        late = datetime(2026, 10, 20, 23, 30, tzinfo=dt_timezone.utc)

        result = send_push_to_user(self.user, title="Hello", message="World", now=late)

        self.assertEqual(result.suppressed_reason, "quiet_hours")
        self.transport.send.assert_not_called()
        self.assertTrue(Notification.objects.filter(user=self.user, title="Hello").exists())

    def test_disabled_push_preference(self):
        NotificationPreference.objects.create(user=self.user, push_enabled=False)
        result = send_push_to_user(self.user, title="Hello", message="World")
        self.assertEqual(result.suppressed_reason, "push_disabled")
        self.transport.send.assert_not_called()

    @patch("notifications.services.get_channel_layer")
    def test_notification_is_broadcast_to_user_group(self, mock_layer):
        mock_layer.return_value.group_send = AsyncMock()
        self.transport.send.side_effect = receipts_for

        result = send_push_to_user(self.user, title="Hello", message="World")

        group, event = mock_layer.return_value.group_send.call_args.args
        self.assertEqual(group, f"notifications_{self.user.pk}")
        self.assertEqual(event["type"], "send_notification")
        self.assertEqual(event["message"]["id"], result.notification.pk)


@patch("notifications.services.get_push_transport", return_value=Mock(send=Mock(side_effect=receipts_for)))
class DigestTests(TestCase):
    def setUp(self):
        self.user, self.account, self.calendar = make_user_with_calendar()
        NotificationPreference.objects.create(user=self.user, digest_hour=7, timezone="UTC")
        self.morning = datetime(2026, 10, 20, 8, 0, tzinfo=dt_timezone.utc)
        make_event(self.calendar, "standup", datetime(2026, 10, 20, 10, 0, tzinfo=dt_timezone.utc), title="Standup")
        make_event(self.calendar, "tomorrow", datetime(2026, 10, 21, 10, 0, tzinfo=dt_timezone.utc))

    def digests(self):
        return Notification.objects.filter(user=self.user, type=Notification.Type.DAILY_DIGEST)

    def test_digest_is_sent_once_per_local_day(self, mock_transport):
        first = send_daily_digests(now=self.morning)
        second = send_daily_digests(now=self.morning + timedelta(hours=3))
        next_day = send_daily_digests(now=self.morning + timedelta(days=1))

        self.assertEqual((first["sent"], second["sent"], next_day["sent"]), (1, 0, 1))
        digest = self.digests().get(payload__date="2026-10-20")
        self.assertEqual(digest.title, "Today: 1 event")
        self.assertIn("10:00  Standup", digest.message)
        self.assertEqual(
            NotificationPreference.objects.get(user=self.user).last_digest_sent_on,
            (self.morning + timedelta(days=1)).date(),
        )

    def test_digest_waits_for_local_digest_hour(self, mock_transport):
        NotificationPreference.objects.filter(user=self.user).update(timezone="America/New_York")
        # 08:00 UTC is 04:00 in New York.
        self.assertEqual(send_daily_digests(now=self.morning)["sent"], 0)
        self.assertFalse(self.digests().exists())

    def test_digest_can_be_disabled(self, mock_transport):
        NotificationPreference.objects.filter(user=self.user).update(daily_digest_enabled=False)
        self.assertEqual(send_daily_digests(now=self.morning)["sent"], 0)

    def test_revoked_accounts_get_no_digest(self, mock_transport):
        ConnectedAccount.objects.filter(pk=self.account.pk).update(status=ConnectedAccount.Status.REVOKED)
        self.assertEqual(send_daily_digests(now=self.morning)["sent"], 0)

    def test_all_day_events_follow_the_local_date(self, mock_transport):
        NotificationPreference.objects.filter(user=self.user).update(timezone="America/Los_Angeles")
        Calendar.objects.filter(pk=self.calendar.pk).update(timezone="America/Los_Angeles")
        zone = ZoneInfo("America/Los_Angeles")
        for day, title in ((18, "Today holiday"), (19, "Tomorrow holiday")):
            start = datetime(2026, 10, day, tzinfo=zone)
            make_event(self.calendar, f"holiday-{day}", start, end=start + timedelta(days=1), is_all_day=True, title=title)

        # 08:00 on Oct 18 in Los Angeles.
        send_daily_digests(now=datetime(2026, 10, 18, 15, 0, tzinfo=dt_timezone.utc))

        digest = self.digests().get(payload__date="2026-10-18")
        self.assertEqual(digest.title, "Today: 1 event")
        self.assertEqual(digest.message, "All day  Today holiday")

    def test_all_day_event_of_a_utc_calendar_keeps_its_date(self, mock_transport):
        NotificationPreference.objects.filter(user=self.user).update(timezone="America/Los_Angeles")
        start = datetime(2026, 10, 19, tzinfo=dt_timezone.utc)
        make_event(self.calendar, "holiday", start, end=start + timedelta(days=1), is_all_day=True, title="Tomorrow holiday")

        send_daily_digests(now=datetime(2026, 10, 18, 15, 0, tzinfo=dt_timezone.utc))

        digest = self.digests().get(payload__date="2026-10-18")
        self.assertEqual(digest.title, "Today: no events")


@patch("notifications.services.get_push_transport", return_value=Mock(send=Mock(side_effect=receipts_for)))
class ReminderTests(TestCase):
    def setUp(self):
        self.user, self.account, self.calendar = make_user_with_calendar()
        self.now = timezone.now()

    def test_events_inside_lead_time_are_reminded_once(self, mock_transport):
        soon = make_event(self.calendar, "soon", self.now + timedelta(minutes=10), location="Room 4")
        later = make_event(self.calendar, "later", self.now + timedelta(minutes=40))
        make_event(self.calendar, "all-day", self.now + timedelta(minutes=5), is_all_day=True)
        make_event(self.calendar, "cancelled", self.now + timedelta(minutes=5), status=Event.Status.CANCELLED)

        first = dispatch_due_reminders(now=self.now)
        second = dispatch_due_reminders(now=self.now)

        self.assertEqual(first["reminders"], 1)
        self.assertEqual(second["reminders"], 0)
        soon.refresh_from_db()
        later.refresh_from_db()
        self.assertIsNotNone(soon.reminder_sent_at)
        self.assertIsNone(later.reminder_sent_at)
        reminder = Notification.objects.get(user=self.user, type=Notification.Type.EVENT_REMINDER)
        self.assertEqual(reminder.payload["event_id"], soon.pk)
        self.assertIn("Room 4", reminder.message)

    def test_longer_lead_time_preference(self, mock_transport):
        NotificationPreference.objects.create(user=self.user, reminder_lead_minutes=60)
        make_event(self.calendar, "later", self.now + timedelta(minutes=40))
        self.assertEqual(dispatch_due_reminders(now=self.now)["reminders"], 1)

    def test_disabled_calendar_is_skipped(self, mock_transport):
        Calendar.objects.filter(pk=self.calendar.pk).update(sync_enabled=False)
        make_event(self.calendar, "soon", self.now + timedelta(minutes=10))
        self.assertEqual(dispatch_due_reminders(now=self.now)["users"], 0)

    def test_one_users_failure_does_not_block_others(self, mock_transport):
        other_user, _, other_calendar = make_user_with_calendar("bob")
        make_event(self.calendar, "mine", self.now + timedelta(minutes=10))
        make_event(other_calendar, "theirs", self.now + timedelta(minutes=10))

        real_send = send_push_to_user

        def flaky_send(user, **kwargs):
            if user == self.user:
                raise RuntimeError("database hiccup")
            return real_send(user, **kwargs)

        with patch("notifications.services.send_push_to_user", side_effect=flaky_send):
            with self.assertLogs("notifications.services", level="ERROR"):
                summary = dispatch_due_reminders(now=self.now)

        self.assertEqual(summary["failed"], 1)
        self.assertEqual(summary["reminders"], 1)
        self.assertTrue(
            Notification.objects.filter(user=other_user, type=Notification.Type.EVENT_REMINDER).exists()
        )


@patch("notifications.services.get_push_transport", return_value=Mock(send=Mock(side_effect=receipts_for)))
class SyncNotificationTests(TestCase):
    def setUp(self):
        self.user, self.account, self.calendar = make_user_with_calendar()

    def result(self, **fields):
        values = {"account_id": self.account.pk, "trigger": SyncTrigger.CRON, "user_id": self.user.pk}
        values.update(fields)
        return SyncResult(**values)

    def test_reauthorization_creates_one_reconnect_notice(self, mock_transport):
        result = self.result(status=SyncJob.Status.ABORTED, reauthorization_required=True)

        first = dispatch_sync_notifications(result)
        second = dispatch_sync_notifications(result)

        self.assertEqual(first["reconnect"], 1)
        self.assertEqual(second["reconnect"], 0)
        notices = Notification.objects.filter(user=self.user, type=Notification.Type.RECONNECT_REQUIRED)
        self.assertEqual(notices.count(), 1)
        self.assertEqual(notices.get().payload["account_id"], self.account.pk)

    def test_read_notice_allows_a_new_one(self, mock_transport):
        notify_reconnect_required(self.account)
        Notification.objects.update(status=Notification.Status.READ)
        self.assertIsNotNone(notify_reconnect_required(self.account))

    def test_coalesced_result_is_ignored(self, mock_transport):
        summary = dispatch_sync_notifications(self.result(status=SyncJob.Status.COALESCED))
        self.assertEqual(summary, {"reconnect": 0, "digest": 0, "reminders": 0})
        self.assertFalse(Notification.objects.exists())

    def test_successful_sync_sends_due_reminders(self, mock_transport):
        now = timezone.now()
        make_event(self.calendar, "soon", now + timedelta(minutes=5))
        NotificationPreference.objects.create(user=self.user, daily_digest_enabled=False)

        summary = dispatch_sync_notifications(
            self.result(status=SyncJob.Status.SUCCEEDED, calendars_updated=1), now=now
        )

        self.assertEqual(summary["reminders"], 1)
        self.assertEqual(summary["digest"], 0)


class NotificationApiTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="api", password="secret")
        self.api = APIClient()
        self.api.force_authenticate(self.user)

    def _items(self, response):
        return response.data["results"] if isinstance(response.data, dict) else response.data

    def test_list_and_mark_read(self):
        notification = Notification.objects.create(user=self.user, title="Hi", message="There")
        other = get_user_model().objects.create_user(username="other", password="secret")
        Notification.objects.create(user=other, title="Private", message="Nope")

        listed = self._items(self.api.get(reverse("notifications:notifications-list")))
        self.assertEqual([item["id"] for item in listed], [notification.pk])

        response = self.api.patch(reverse("notifications:notifications-mark-read", args=[notification.pk]))
        self.assertEqual(response.status_code, 200)
        notification.refresh_from_db()
        self.assertEqual(notification.status, Notification.Status.READ)

    def test_preferences_are_created_on_first_read(self):
        response = self.api.get(reverse("notifications:notification-preferences"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["digest_hour"], 7)
        self.assertTrue(NotificationPreference.objects.filter(user=self.user).exists())

    def test_preferences_validation(self):
        url = reverse("notifications:notification-preferences")
        self.assertEqual(self.api.patch(url, {"timezone": "Nowhere/City"}, format="json").status_code, 400)
        self.assertEqual(self.api.patch(url, {"quiet_hours_start": "22:00"}, format="json").status_code, 400)

        response = self.api.patch(
            url, {"quiet_hours_start": "22:00", "quiet_hours_end": "07:00", "timezone": "Europe/Berlin"}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(NotificationPreference.objects.get(user=self.user).timezone, "Europe/Berlin")

    def test_push_token_registration_is_idempotent(self):
        url = reverse("notifications:push-token-list")
        first = self.api.post(url, {"token": "ExponentPushToken[x]", "platform": "ios"}, format="json")
        second = self.api.post(url, {"token": "ExponentPushToken[x]", "platform": "android"}, format="json")

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 200)
        token = PushToken.objects.get(user=self.user)
        self.assertEqual(token.platform, PushToken.Platform.ANDROID)

        response = self.api.delete(reverse("notifications:push-token-detail", args=[token.pk]))
        self.assertEqual(response.status_code, 204)
        self.assertFalse(PushToken.objects.exists())


class NotificationSocketTests(TransactionTestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="socket", password="secret")
        self.application = JWTAuthMiddleware(URLRouter(websocket_urlpatterns))

    def test_anonymous_connection_is_refused(self):
        async def scenario():
            communicator = WebsocketCommunicator(self.application, "/ws/notifications/")
            connected, _ = await communicator.connect()
            await communicator.disconnect()
            return connected

        self.assertFalse(async_to_sync(scenario)())

    def test_unread_count_and_mark_read(self):
        notification = Notification.objects.create(user=self.user, title="Hi", message="There")
        token = str(AccessToken.for_user(self.user))

        async def scenario():
            communicator = WebsocketCommunicator(self.application, f"/ws/notifications/?token={token}")
            connected, _ = await communicator.connect()
            greeting = await communicator.receive_json_from()
            await communicator.send_json_to({"action": "mark_read", "id": notification.pk})
            reply = await communicator.receive_json_from()
            await communicator.disconnect()
            return connected, greeting, reply

        connected, greeting, reply = async_to_sync(scenario)()

        self.assertTrue(connected)
        self.assertEqual(greeting, {"type": "unread_count", "count": 1})
        self.assertEqual(reply, {"type": "marked_read", "id": notification.pk, "updated": True})
        notification.refresh_from_db()
        self.assertEqual(notification.status, Notification.Status.READ)
