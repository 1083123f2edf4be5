from datetime import timedelta
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.db import connection
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from accounts.models import ConnectedAccount, Credential
from accounts.oauth import OAuthInvalidGrantError, OAuthTransientError, build_state_for_user
from accounts.tasks import refresh_expiring_credentials
from accounts.tokens import TokenManager
from common.choices import SyncTrigger
from common.exceptions import AuthTransientError, ReauthorizationRequired
from notifications.models import Notification

GOOGLE_SETTINGS = dict(
    GOOGLE_OAUTH_CLIENT_ID="client-id",
    GOOGLE_OAUTH_CLIENT_SECRET="client-secret",
    GOOGLE_OAUTH_REDIRECT_URI="http://testserver/accounts/oauth/google/callback/",
)

NO_BACKOFF = dict(
    PROVIDER_MAX_ATTEMPTS=3,
    PROVIDER_RETRY_INITIAL_DELAY=0,
    PROVIDER_RETRY_MAX_DELAY=0,
    PROVIDER_RETRY_JITTER=0,
)


def token_response(payload, status_code=200):
    response = Mock()
    response.status_code = status_code
    response.content = b"{}"
    response.json.return_value = payload
    return response


def make_account(username="alice", *, expires_in=timedelta(hours=1), refresh_token="refresh-1", **account_fields):
    user = get_user_model().objects.create_user(username=username, password="secret")
    account = ConnectedAccount.objects.create(user=user, provider="google", **account_fields)
    Credential.objects.create(
        account=account,
        access_token="access-1",
        refresh_token=refresh_token,
        expires_at=timezone.now() + expires_in,
    )
    return account


@override_settings(**GOOGLE_SETTINGS)
class OAuthFlowTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="oauth", password="secret")
        self.api = APIClient()

    def test_start_returns_authorization_url(self):
        self.api.force_authenticate(self.user)
        response = self.api.get(reverse("accounts:oauth-start", args=["google"]))

        self.assertEqual(response.status_code, 200)
        self.assertIn("accounts.google.com", response.data["authorization_url"])
        self.assertIn("access_type=offline", response.data["authorization_url"])

    @patch("calendars.services.triggers.request_account_sync")
    @patch("accounts.oauth.requests.post")
    def test_callback_stores_encrypted_credential_and_queues_sync(self, mock_post, mock_request_sync):
        mock_post.return_value = token_response(
            {
                "access_token": "ya29.fresh",
                "refresh_token": "1//refresh",
                "expires_in": 3600,
                "token_type": "Bearer",
                "scope": "https://www.googleapis.com/auth/calendar.events",
            }
        )
        state = build_state_for_user(self.user, "google")

        response = self.api.get(
            reverse("accounts:oauth-callback", args=["google"]),
            {"code": "auth-code", "state": state},
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["success"])
        account = ConnectedAccount.objects.get(user=self.user, provider="google")
        self.assertEqual(account.status, ConnectedAccount.Status.AUTHORIZED)
        self.assertEqual(account.credential.access_token, "ya29.fresh")
        self.assertEqual(account.credential.refresh_token, "1//refresh")
        mock_request_sync.assert_called_once_with(account.pk, trigger=SyncTrigger.MANUAL)

        with connection.cursor() as cursor:
            cursor.execute("SELECT access_token FROM accounts_credential WHERE account_id = %s", [account.pk])
            (raw_access,) = cursor.fetchone()
        self.assertTrue(raw_access.startswith("enc::"))

    @patch("calendars.services.triggers.request_account_sync")
    @patch("accounts.oauth.requests.post")
    def test_reconnect_marks_old_reconnect_notice_read(self, mock_post, mock_request_sync):
        account = ConnectedAccount.objects.create(
            user=self.user, provider="google", status=ConnectedAccount.Status.REVOKED, sync_enabled=False
        )
        notice = Notification.objects.create(
            user=self.user,
            title="Reconnect",
            message="Reconnect",
            type=Notification.Type.RECONNECT_REQUIRED,
            payload={"account_id": account.pk},
        )
        mock_post.return_value = token_response({"access_token": "ya29.back", "expires_in": 3600})

        response = self.api.get(
            reverse("accounts:oauth-callback", args=["google"]),
            {"code": "auth-code", "state": build_state_for_user(self.user, "google")},
        )

        self.assertEqual(response.status_code, 200)
        account.refresh_from_db()
        self.assertEqual(account.status, ConnectedAccount.Status.AUTHORIZED)
        self.assertTrue(account.sync_enabled)
        notice.refresh_from_db()
        self.assertEqual(notice.status, Notification.Status.READ)

    @patch("accounts.oauth.requests.post")
    def test_callback_rejects_tampered_state(self, mock_post):
        response = self.api.get(
            reverse("accounts:oauth-callback", args=["google"]),
            {"code": "auth-code", "state": "forged"},
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.data["success"])
        mock_post.assert_not_called()
        self.assertFalse(ConnectedAccount.objects.exists())

    def test_callback_reports_denied_consent(self):
        response = self.api.get(
            reverse("accounts:oauth-callback", args=["google"]),
            {"error": "access_denied"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("access_denied", response.data["detail"])


@override_settings(**NO_BACKOFF)
class TokenManagerTests(TestCase):
    def setUp(self):
        self.oauth = Mock()
        self.manager = TokenManager(oauth_client=self.oauth)

    def test_valid_token_is_returned_without_refresh(self):
        account = make_account()
        self.assertEqual(self.manager.get_valid_access_token(account.pk), "access-1")
        self.oauth.refresh_token.assert_not_called()

    def test_token_inside_safety_margin_refreshes_exactly_once(self):
        account = make_account(expires_in=timedelta(minutes=2))
        self.oauth.refresh_token.return_value = {"access_token": "access-2", "expires_in": 3600}

        first = self.manager.get_valid_access_token(account.pk)
        second = self.manager.get_valid_access_token(account.pk)

        self.assertEqual(first, "access-2")
        self.assertEqual(second, "access-2")
        self.oauth.refresh_token.assert_called_once_with("refresh-1")
        credential = Credential.objects.get(account=account)
        self.assertEqual(credential.refresh_token, "refresh-1")
        self.assertGreater(credential.expires_at, timezone.now() + timedelta(minutes=50))

    def test_force_refresh_reuses_token_rotated_by_another_worker(self):
        account = make_account()
        token = self.manager.force_refresh(account.pk, rejected_token="stale-token")
        self.assertEqual(token, "access-1")
        self.oauth.refresh_token.assert_not_called()

    def test_invalid_grant_revokes_account(self):
        account = make_account(expires_in=timedelta(minutes=1))
        self.oauth.refresh_token.side_effect = OAuthInvalidGrantError("Token has been revoked.", error_code="invalid_grant")

        with self.assertRaises(ReauthorizationRequired):
            self.manager.get_valid_access_token(account.pk)

        account.refresh_from_db()
        self.assertEqual(account.status, ConnectedAccount.Status.REVOKED)
        self.assertFalse(account.sync_enabled)
        self.assertTrue(account.needs_reconnection)
        self.assertFalse(Credential.objects.filter(account=account).exists())

        with self.assertRaises(ReauthorizationRequired):
            self.manager.get_valid_access_token(account.pk)

    def test_missing_refresh_token_requires_reauthorization(self):
        account = make_account(expires_in=timedelta(minutes=1), refresh_token=None)
        with self.assertRaises(ReauthorizationRequired):
            self.manager.get_valid_access_token(account.pk)
        self.oauth.refresh_token.assert_not_called()

    def test_transient_failure_is_retried_then_marks_refresh_failed(self):
        account = make_account(expires_in=timedelta(minutes=1))
        self.oauth.refresh_token.side_effect = OAuthTransientError("timeout")

        with self.assertRaises(AuthTransientError):
            self.manager.get_valid_access_token(account.pk)

        self.assertEqual(self.oauth.refresh_token.call_count, 3)
        account.refresh_from_db()
        self.assertEqual(account.status, ConnectedAccount.Status.REFRESH_FAILED)
        self.assertTrue(Credential.objects.filter(account=account).exists())

    def test_successful_refresh_clears_refresh_failed(self):
        account = make_account(expires_in=timedelta(minutes=1), status=ConnectedAccount.Status.REFRESH_FAILED)
        self.oauth.refresh_token.return_value = {"access_token": "access-2", "expires_in": 3600}

        self.manager.get_valid_access_token(account.pk)

        account.refresh_from_db()
        self.assertEqual(account.status, ConnectedAccount.Status.AUTHORIZED)


@override_settings(**NO_BACKOFF)
class RefreshExpiringCredentialsTaskTests(TestCase):
    @patch("accounts.tokens.get_oauth_client")
    def test_refreshes_soon_expiring_and_revokes_dead_grants(self, mock_get_client):
        healthy = make_account("healthy", expires_in=timedelta(minutes=10))
        dead = make_account("dead", expires_in=timedelta(minutes=10), refresh_token="dead-refresh")
        later = make_account("later", expires_in=timedelta(hours=5))

        def refresh(refresh_token):
            if refresh_token == "dead-refresh":
                raise OAuthInvalidGrantError("revoked", error_code="invalid_grant")
            return {"access_token": "access-2", "expires_in": 3600}

        mock_get_client.return_value.refresh_token.side_effect = refresh

        summary = refresh_expiring_credentials()

        self.assertEqual(summary, {"refreshed": 1, "revoked": 1, "failed": 0})
        self.assertEqual(Credential.objects.get(account=healthy).access_token, "access-2")
        self.assertEqual(Credential.objects.get(account=later).access_token, "access-1")
        dead.refresh_from_db()
        self.assertEqual(dead.status, ConnectedAccount.Status.REVOKED)
        self.assertEqual(
            Notification.objects.filter(user=dead.user, type=Notification.Type.RECONNECT_REQUIRED).count(),
            1,
        )


class AccountViewTests(TestCase):
    def setUp(self):
        self.account = make_account()
        self.api = APIClient()
        self.api.force_authenticate(self.account.user)

    def test_list_only_shows_own_accounts(self):
        make_account("bob")
        response = self.api.get(reverse("accounts:account-list"))
        self.assertEqual(response.status_code, 200)
        results = response.data["results"] if isinstance(response.data, dict) else response.data
        self.assertEqual([item["id"] for item in results], [self.account.pk])
        self.assertFalse(results[0]["needs_reconnection"])

    @patch("accounts.views.TokenManager")
    def test_refresh_endpoint_reports_reconnection_needed(self, mock_manager):
        mock_manager.return_value.force_refresh.side_effect = ReauthorizationRequired("dead")
        response = self.api.post(reverse("accounts:oauth-refresh", args=["google"]))
        self.assertEqual(response.status_code, 409)

    @patch("accounts.views.TokenManager")
    def test_refresh_endpoint_reports_transient_failure(self, mock_manager):
        mock_manager.return_value.force_refresh.side_effect = AuthTransientError("timeout")
        response = self.api.post(reverse("accounts:oauth-refresh", args=["google"]))
        self.assertEqual(response.status_code, 503)

    @patch("webhooks.services.stop_account_watches")
    def test_disconnect_stops_watches_and_deletes(self, mock_stop):
        response = self.api.delete(reverse("accounts:account-detail", args=[self.account.pk]))
        self.assertEqual(response.status_code, 204)
        mock_stop.assert_called_once()
        self.assertFalse(ConnectedAccount.objects.filter(pk=self.account.pk).exists())
