import warnings
from datetime import timedelta
from unittest.mock import Mock

from cryptography.fernet import Fernet
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.db import connection
from django.test import SimpleTestCase, TestCase, override_settings
from tenacity import RetryCallState

from accounts.models import ConnectedAccount, Credential
from common.locks import acquire_lock, advisory_lock, is_locked, release_lock
from common.retry import build_retrying, call_with_retry
from common.security import EncryptionError, decrypt, encrypt, get_fernet
from common.utils import chunked, resolve_timedelta_setting

NO_BACKOFF = dict(
    PROVIDER_MAX_ATTEMPTS=3,
    PROVIDER_RETRY_INITIAL_DELAY=0,
    PROVIDER_RETRY_MAX_DELAY=0,
    PROVIDER_RETRY_JITTER=0,
)


class EncryptionTests(SimpleTestCase):
    def tearDown(self):
        get_fernet.cache_clear()

    def test_round_trip(self):
        token = encrypt("ya29.secret")
        self.assertNotIn("ya29.secret", token)
        self.assertEqual(decrypt(token), "ya29.secret")

    def test_rotated_key_still_decrypts_old_values(self):
        get_fernet.cache_clear()
        old = encrypt("refresh-me")

        new_key = Fernet.generate_key().decode()
        with override_settings(FIELD_ENCRYPTION_KEYS=[new_key]):
            get_fernet.cache_clear()
            self.assertEqual(decrypt(old), "refresh-me")
            fresh = encrypt("fresh")
            self.assertEqual(Fernet(new_key.encode()).decrypt(fresh.encode()).decode(), "fresh")

    def test_garbage_raises(self):
        with self.assertRaises(EncryptionError):
            decrypt("not-a-token")


class EncryptedFieldTests(TestCase):
    def test_credentials_are_encrypted_at_rest(self):
        user = get_user_model().objects.create_user(username="enc", password="secret")
        account = ConnectedAccount.objects.create(user=user, provider="google")
        Credential.objects.create(account=account, access_token="access-123", refresh_token="refresh-456")

        with connection.cursor() as cursor:
            cursor.execute(
                "SELECT access_token, refresh_token FROM accounts_credential WHERE account_id = %s",
                [account.pk],
            )
            raw_access, raw_refresh = cursor.fetchone()

        self.assertTrue(raw_access.startswith("enc::"))
        self.assertTrue(raw_refresh.startswith("enc::"))
        self.assertNotIn("access-123", raw_access)

        credential = Credential.objects.get(account=account)
        self.assertEqual(credential.access_token, "access-123")
        self.assertEqual(credential.refresh_token, "refresh-456")


class LockTests(SimpleTestCase):
    def setUp(self):
        cache.clear()

    def test_second_acquire_fails_until_released(self):
        token = acquire_lock("calsync:test-lock", ttl=60)
        self.assertIsNotNone(token)
        self.assertIsNone(acquire_lock("calsync:test-lock", ttl=60))
        self.assertTrue(is_locked("calsync:test-lock"))

        self.assertTrue(release_lock("calsync:test-lock", token))
        self.assertFalse(is_locked("calsync:test-lock"))

    def test_release_with_foreign_token_is_ignored(self):
        token = acquire_lock("calsync:test-lock", ttl=60)
        with self.assertLogs("common.locks", level="WARNING"):
            self.assertFalse(release_lock("calsync:test-lock", "someone-else"))
        self.assertTrue(is_locked("calsync:test-lock"))
        release_lock("calsync:test-lock", token)

    def test_context_manager_reports_contention(self):
        with advisory_lock("calsync:test-lock", ttl=60) as first:
            self.assertTrue(first)
            with advisory_lock("calsync:test-lock", ttl=60) as second:
                self.assertFalse(second)
            self.assertTrue(is_locked("calsync:test-lock"))
        self.assertFalse(is_locked("calsync:test-lock"))


@override_settings(**NO_BACKOFF)
class RetryTests(SimpleTestCase):
    def test_retries_listed_errors_then_succeeds(self):
        func = Mock(side_effect=[TimeoutError("slow"), TimeoutError("slow"), "ok"])
        func.__qualname__ = "flaky"
        self.assertEqual(call_with_retry(func, 1, retry_on=(TimeoutError,), key="v"), "ok")
        self.assertEqual(func.call_count, 3)
        func.assert_called_with(1, key="v")

    def test_reraises_last_error_after_max_attempts(self):
        func = Mock(side_effect=TimeoutError("still slow"))
        func.__qualname__ = "flaky"
        with self.assertRaises(TimeoutError):
            call_with_retry(func, retry_on=(TimeoutError,))
        self.assertEqual(func.call_count, 3)

    def test_other_errors_are_not_retried(self):
        func = Mock(side_effect=ValueError("bad"))
        func.__qualname__ = "broken"
        with self.assertRaises(ValueError):
            call_with_retry(func, retry_on=(TimeoutError,))
        self.assertEqual(func.call_count, 1)

    @override_settings(PROVIDER_RETRY_INITIAL_DELAY=0.5, PROVIDER_RETRY_MAX_DELAY=8.0, PROVIDER_RETRY_JITTER=0.5)
    def test_backoff_grows_with_bounded_jitter(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            retrying = build_retrying((TimeoutError,))
        state = RetryCallState(retrying, None, (), {})
        delays = []
        for attempt in (1, 3, 10):
            state.attempt_number = attempt
            delays.append(retrying.wait(state))

        self.assertTrue(0.5 <= delays[0] <= 1.0)
        self.assertTrue(2.0 <= delays[1] <= 2.5)
        self.assertTrue(8.0 <= delays[2] <= 8.5)


class UtilsTests(SimpleTestCase):
    def test_chunked(self):
        self.assertEqual(list(chunked(range(5), 2)), [[0, 1], [2, 3], [4]])
        with self.assertRaises(ValueError):
            list(chunked([1], 0))

    @override_settings(SOME_WINDOW=90)
    def test_timedelta_setting_accepts_seconds(self):
        self.assertEqual(resolve_timedelta_setting("SOME_WINDOW", timedelta(1)), timedelta(seconds=90))

    @override_settings(SOME_WINDOW="soon")
    def test_timedelta_setting_falls_back(self):
        with self.assertLogs("common", level="WARNING"):
            self.assertEqual(resolve_timedelta_setting("SOME_WINDOW", timedelta(minutes=5)), timedelta(minutes=5))
