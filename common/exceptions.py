"""Error taxonomy shared by the sync engine, webhook manager and dispatcher."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional


class CalendarSyncError(Exception):
    """Base class for calendar synchronisation failures."""


# --- authorization ------------------------------------------------------
class AuthError(CalendarSyncError):
    """The provider rejected our credentials."""

    def __init__(self, message: str = "", *, account_id=None):
        super().__init__(message)
        self.account_id = account_id


class AuthTransientError(AuthError):
    """Token refresh failed for a reason that may go away on its own."""


class ReauthorizationRequired(AuthError):
    """The refresh token is invalid or revoked; the user has to reconnect."""


# --- provider -----------------------------------------------------------
class ProviderError(CalendarSyncError):
    """A non-auth failure reported by the calendar provider."""

    transient = False

    def __init__(self, message: str = "", *, status_code: Optional[int] = None, reason: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class RateLimitedError(ProviderError):
    transient = True

    def __init__(self, message: str = "", *, retry_after: Optional[timedelta] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ProviderServerError(ProviderError):
    """5xx responses and transport failures (timeouts, refused connections)."""

    transient = True


class ProviderNotFoundError(ProviderError):
    pass


# --- reconciliation -----------------------------------------------------
class ListingTruncated(CalendarSyncError):
    """An event listing stopped at the page limit before its last page."""

    def __init__(self, calendar_id: str, pages: int):
        self.calendar_id = calendar_id
        self.pages = pages
        super().__init__(f"Event listing for {calendar_id} truncated after {pages} pages")


class SyncConflict(CalendarSyncError):
    """A local edit lost against a different provider value.

    Conflicts are resolved provider-wins; instances are collected on the
    sync result for auditing and are not raised.
    """

    def __init__(self, *, event_id, provider_event_id: str, fields):
        self.event_id = event_id
        self.provider_event_id = provider_event_id
        self.fields = tuple(fields)
        super().__init__(
            f"Local edit of event {provider_event_id} superseded by provider "
            f"({', '.join(self.fields)})"
        )


# --- delivery -----------------------------------------------------------
class DeliveryError(Exception):
    """Push delivery failed."""


class DeliveryTokenInvalid(DeliveryError):
    """The push endpoint is no longer registered."""


class DeliveryTransientError(DeliveryError):
    """The push transport was unavailable."""


__all__ = [
    "AuthError",
    "AuthTransientError",
    "CalendarSyncError",
    "DeliveryError",
    "DeliveryTokenInvalid",
    "DeliveryTransientError",
    "ListingTruncated",
    "ProviderError",
    "ProviderNotFoundError",
    "ProviderServerError",
    "RateLimitedError",
    "ReauthorizationRequired",
    "SyncConflict",
]
