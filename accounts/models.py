from django.conf import settings
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from common.choices import Provider
from common.fields import EncryptedTextField
from common.models import BaseModel


class ConnectedAccount(BaseModel):
    """A user's link to a calendar provider."""

    class Status(models.TextChoices):
        AUTHORIZED = 'authorized', _('Authorized')
        REFRESH_FAILED = 'refresh_failed', _('Refresh failed')
        REVOKED = 'revoked', _('Revoked')

    class Tier(models.TextChoices):
        STANDARD = 'standard', _('Standard')
        PRIORITY = 'priority', _('Priority')

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="connected_accounts",
    )
    provider = models.CharField(max_length=32, choices=Provider.choices, default=Provider.GOOGLE)
    provider_account_id = models.CharField(max_length=255, blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.AUTHORIZED)
    tier = models.CharField(max_length=20, choices=Tier.choices, default=Tier.STANDARD)
    sync_enabled = models.BooleanField(default=True)
    last_synced_at = models.DateTimeField(null=True, blank=True)
    sync_cooldown_until = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True)

    class Meta:
        unique_together = ("user", "provider")
        ordering = ("user", "provider")
        indexes = [
            models.Index(fields=["status", "sync_enabled"], name="account_status_sync_idx"),
        ]

    def __str__(self):
        return f"{self.user_id} | {self.provider} | {self.status}"

    @property
    def needs_reconnection(self):
        return self.status == self.Status.REVOKED

    @property
    def in_cooldown(self):
        return bool(self.sync_cooldown_until and self.sync_cooldown_until > timezone.now())


class Credential(BaseModel):
    """OAuth credential for exactly one account; refreshed in place."""

    account = models.OneToOneField(
        ConnectedAccount,
        on_delete=models.CASCADE,
        related_name="credential",
    )
    access_token = EncryptedTextField()
    refresh_token = EncryptedTextField(blank=True, null=True)
    token_type = models.CharField(max_length=50, blank=True, default="Bearer")
    scope = models.TextField(blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)

    def __str__(self):
        return f"Credential for account {self.account_id}"

    @property
    def scopes(self):
        return set(self.scope.split()) if self.scope else set()

    @property
    def is_expired(self):
        return bool(self.expires_at and self.expires_at <= timezone.now())

    def expires_within(self, margin):
        """True when the token is unusable within ``margin``; unknown expiry counts."""
        if self.expires_at is None:
            return True
        return self.expires_at - margin <= timezone.now()
