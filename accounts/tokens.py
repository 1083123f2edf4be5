"""Credential lifecycle for connected calendar accounts.

All reads and writes of :class:`~accounts.models.Credential` go through
:class:`TokenManager`. Refreshes lock the credential row so concurrent
workers serialize; the second worker re-checks the expiry after acquiring
the lock and reuses the token the first one stored.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from django.db import transaction

from accounts.models import ConnectedAccount, Credential
from accounts.oauth import (
    BaseOAuthClient,
    OAuthIntegrationError,
    OAuthInvalidGrantError,
    OAuthTransientError,
    extract_expiry,
    get_oauth_client,
)
from common.exceptions import AuthTransientError, ReauthorizationRequired
from common.retry import call_with_retry
from common.utils import resolve_timedelta_setting

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN = timedelta(minutes=5)


def get_safety_margin() -> timedelta:
    return resolve_timedelta_setting("CALENDAR_TOKEN_SAFETY_MARGIN", DEFAULT_SAFETY_MARGIN)


class TokenManager:
    """Obtain, refresh and invalidate provider credentials."""

    def __init__(self, oauth_client: Optional[BaseOAuthClient] = None):
        self._oauth_client = oauth_client

    def _client_for(self, provider: str) -> BaseOAuthClient:
        if self._oauth_client is not None:
            return self._oauth_client
        return get_oauth_client(provider)

    # --- reads --------------------------------------------------------
    def get_valid_access_token(self, account_id: int) -> str:
        """Return an access token valid for at least the safety margin.

        Raises ``ReauthorizationRequired`` when the account has no usable
        grant and ``AuthTransientError`` when a refresh could not complete.
        """

        margin = get_safety_margin()
        credential = (
            Credential.objects.select_related("account")
            .filter(account_id=account_id)
            .first()
        )
        if credential is None or credential.account.status == ConnectedAccount.Status.REVOKED:
            raise ReauthorizationRequired(
                f"Account {account_id} has no active credential.", account_id=account_id
            )
        if not credential.expires_within(margin) and credential.access_token:
            return credential.access_token
        return self._refresh(account_id, margin=margin)

    def force_refresh(self, account_id: int, *, rejected_token: Optional[str] = None) -> str:
        """Refresh regardless of the stored expiry.

        ``rejected_token`` is the token the provider just refused; if another
        worker already replaced it, the replacement is returned without a
        second refresh.
        """

        return self._refresh(account_id, margin=get_safety_margin(), force=True, rejected_token=rejected_token)

    def _refresh(
        self,
        account_id: int,
        *,
        margin: timedelta,
        force: bool = False,
        rejected_token: Optional[str] = None,
    ) -> str:
        failure: Optional[Exception] = None

        with transaction.atomic():
            credential = (
                Credential.objects.select_for_update()
                .select_related("account")
                .filter(account_id=account_id)
                .first()
            )
            if credential is None:
                raise ReauthorizationRequired(
                    f"Account {account_id} has no active credential.", account_id=account_id
                )

            usable = credential.access_token and not credential.expires_within(margin)
            if usable and (not force or (rejected_token and credential.access_token != rejected_token)):
                return credential.access_token

            account = credential.account
            if not credential.refresh_token:
                failure = ReauthorizationRequired(
                    f"Account {account_id} has no refresh token.", account_id=account_id
                )
            else:
                try:
                    client = self._client_for(account.provider)
                    payload = call_with_retry(
                        client.refresh_token,
                        credential.refresh_token,
                        retry_on=(OAuthTransientError,),
                    )
                except OAuthInvalidGrantError as exc:
                    failure = ReauthorizationRequired(str(exc), account_id=account_id)
                except OAuthIntegrationError as exc:
                    failure = AuthTransientError(str(exc), account_id=account_id)
                else:
                    self._apply_payload(credential, payload)
                    credential.save()
                    if account.status != ConnectedAccount.Status.AUTHORIZED or account.last_error:
                        account.status = ConnectedAccount.Status.AUTHORIZED
                        account.last_error = ""
                        account.save(update_fields=["status", "last_error", "updated_at"])
                    logger.info("Refreshed credential for account %s", account_id)
                    return credential.access_token

        if isinstance(failure, ReauthorizationRequired):
            self.revoke(account_id, reason=str(failure))
            logger.warning("Account %s requires reauthorization: %s", account_id, failure)
        else:
            ConnectedAccount.objects.filter(pk=account_id).exclude(
                status=ConnectedAccount.Status.REVOKED
            ).update(status=ConnectedAccount.Status.REFRESH_FAILED, last_error=str(failure)[:1000])
            logger.error("Credential refresh failed for account %s: %s", account_id, failure)
        raise failure

    # --- writes -------------------------------------------------------
    def store_authorization(self, user, payload: Dict[str, Any], *, provider: str = "google",
                            default_scope: str = "") -> ConnectedAccount:
        """Persist the result of an authorization-code grant."""

        if "access_token" not in payload:
            raise OAuthIntegrationError("OAuth response did not include an access_token.")

        with transaction.atomic():
            account, created = ConnectedAccount.objects.select_for_update().get_or_create(
                user=user,
                provider=provider,
            )
            account.status = ConnectedAccount.Status.AUTHORIZED
            account.sync_enabled = True
            account.sync_cooldown_until = None
            account.last_error = ""
            account.save()

            credential = Credential.objects.select_for_update().filter(account=account).first()
            if credential is None:
                credential = Credential(account=account)
            self._apply_payload(credential, payload, default_scope=default_scope)
            credential.save()

        logger.info(
            "%s %s account %s for user %s",
            "Connected" if created else "Reauthorized",
            provider,
            account.pk,
            user.pk,
        )
        return account

    def revoke(self, account_id: int, reason: str = "") -> bool:
        """Drop the credential and park the account as needing reconnection.

        Returns ``True`` if the account transitioned to revoked.
        """

        with transaction.atomic():
            Credential.objects.filter(account_id=account_id).delete()
            updated = (
                ConnectedAccount.objects.filter(pk=account_id)
                .exclude(status=ConnectedAccount.Status.REVOKED)
                .update(
                    status=ConnectedAccount.Status.REVOKED,
                    sync_enabled=False,
                    last_error=(reason or "Authorization revoked")[:1000],
                )
            )
        return bool(updated)

    @staticmethod
    def _apply_payload(credential: Credential, payload: Dict[str, Any], *, default_scope: str = "") -> None:
        credential.access_token = payload["access_token"]
        # Google does not always re-issue the refresh token; keep the old one.
        if payload.get("refresh_token"):
            credential.refresh_token = payload["refresh_token"]
        credential.token_type = payload.get("token_type") or credential.token_type or "Bearer"
        scope = payload.get("scope") or default_scope
        if scope:
            credential.scope = scope
        credential.expires_at = extract_expiry(payload)


__all__ = ["TokenManager", "get_safety_margin"]
