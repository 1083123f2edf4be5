"""Typed request layer over the Google Calendar v3 REST API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests
from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from accounts.tokens import TokenManager
from common.exceptions import (
    AuthError,
    ProviderError,
    ProviderNotFoundError,
    ProviderServerError,
    RateLimitedError,
)
from common.retry import call_with_retry

logger = logging.getLogger(__name__)

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


# --- response types -----------------------------------------------------
@dataclass(frozen=True)
class ProviderCalendar:
    id: str
    name: str = ""
    color: str = ""
    timezone: str = ""
    is_primary: bool = False
    access_role: str = ""

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ProviderCalendar":
        return cls(
            id=data["id"],
            name=data.get("summaryOverride") or data.get("summary") or "",
            color=data.get("backgroundColor") or "",
            timezone=data.get("timeZone") or "",
            is_primary=bool(data.get("primary", False)),
            access_role=data.get("accessRole") or "",
        )


@dataclass(frozen=True)
class ProviderEvent:
    id: str
    status: str = "confirmed"
    title: str = ""
    description: str = ""
    location: str = ""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    is_all_day: bool = False
    updated: Optional[datetime] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    def times_in(self, tzinfo) -> Tuple[Optional[datetime], Optional[datetime]]:
        """Start and end with all-day dates placed at local midnight of ``tzinfo``."""
        if not self.is_all_day or self.start_date is None:
            return self.start, self.end
        start = datetime.combine(self.start_date, time.min, tzinfo=tzinfo)
        end_date = self.end_date or self.start_date + timedelta(days=1)
        return start, datetime.combine(end_date, time.min, tzinfo=tzinfo)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ProviderEvent":
        start_data = data.get("start") or {}
        end_data = data.get("end") or {}
        is_all_day = "date" in start_data
        start = _parse_provider_time(start_data)
        end = _parse_provider_time(end_data)
        if start is not None and end is None:
            end = start + (timedelta(days=1) if is_all_day else timedelta(0))
        # Google's "tentative" is still a live event.
        status = "cancelled" if data.get("status") == "cancelled" else "confirmed"
        updated = parse_datetime(data["updated"]) if data.get("updated") else None
        return cls(
            id=data["id"],
            status=status,
            title=data.get("summary") or "",
            description=data.get("description") or "",
            location=data.get("location") or "",
            start=start,
            end=end,
            is_all_day=is_all_day,
            updated=updated,
            start_date=parse_date(start_data["date"]) if start_data.get("date") else None,
            end_date=parse_date(end_data["date"]) if end_data.get("date") else None,
        )


@dataclass
class EventListing:
    events: List[ProviderEvent] = field(default_factory=list)
    complete: bool = True
    pages: int = 0


@dataclass(frozen=True)
class ChannelRegistration:
    channel_id: str
    resource_id: str
    expires_at: Optional[datetime]
    resource_uri: str = ""


def _parse_provider_time(data: Dict[str, Any]) -> Optional[datetime]:
    if data.get("dateTime"):
        value = parse_datetime(data["dateTime"])
        if value is not None and timezone.is_naive(value):
            value = timezone.make_aware(value, dt_timezone.utc)
        return value
    if data.get("date"):
        day = parse_date(data["date"])
        if day is None:
            return None
        return datetime.combine(day, time.min, tzinfo=dt_timezone.utc)
    return None


def build_event_body(
    *,
    title: Optional[str] = None,
    description: Optional[str] = None,
    location: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    is_all_day: bool = False,
    tzinfo=None,
) -> Dict[str, Any]:
    """Translate local event fields into a Calendar API request body.

    All-day dates are read in ``tzinfo``, the calendar's zone (UTC when unset).
    """

    body: Dict[str, Any] = {}
    if title is not None:
        body["summary"] = title
    if description is not None:
        body["description"] = description
    if location is not None:
        body["location"] = location
    for key, value in (("start", start), ("end", end)):
        if value is None:
            continue
        if is_all_day:
            body[key] = {"date": value.astimezone(tzinfo or dt_timezone.utc).date().isoformat()}
        else:
            body[key] = {"dateTime": value.isoformat()}
    return body


# --- client -------------------------------------------------------------
class CalendarClient:
    """Per-account client. Every request resolves a token through ``TokenManager``."""

    base_url = "https://www.googleapis.com/calendar/v3"
    page_size = 250

    def __init__(
        self,
        account_id: int,
        *,
        token_manager: Optional[TokenManager] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ):
        self.account_id = account_id
        self.token_manager = token_manager or TokenManager()
        self.session = session or requests.Session()
        self.timeout = timeout if timeout is not None else getattr(settings, "CALENDAR_API_TIMEOUT", 10)

    def close(self) -> None:
        self.session.close()

    # --- public API ---------------------------------------------------
    def list_calendars(self) -> List[ProviderCalendar]:
        calendars: List[ProviderCalendar] = []
        page_token = None
        max_pages = getattr(settings, "CALENDAR_MAX_PAGES", 20)
        for _ in range(max_pages):
            params = {"maxResults": self.page_size}
            if page_token:
                params["pageToken"] = page_token
            payload = self._request("GET", "users/me/calendarList", params=params)
            calendars.extend(ProviderCalendar.from_payload(item) for item in payload.get("items", []))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
        return calendars

    def list_events(self, calendar_id: str, time_min: datetime, time_max: datetime) -> EventListing:
        """List events in ``[time_min, time_max)`` including deleted ones.

        The listing is ``complete`` only when the last page was fetched within
        ``CALENDAR_MAX_PAGES``.
        """

        listing = EventListing(complete=False)
        page_token = None
        max_pages = getattr(settings, "CALENDAR_MAX_PAGES", 20)
        while listing.pages < max_pages:
            params = {
                "timeMin": time_min.isoformat(),
                "timeMax": time_max.isoformat(),
                "singleEvents": "true",
                "showDeleted": "true",
                "maxResults": self.page_size,
            }
            if page_token:
                params["pageToken"] = page_token
            payload = self._request("GET", f"calendars/{self._quote(calendar_id)}/events", params=params)
            listing.pages += 1
            for item in payload.get("items", []):
                listing.events.append(ProviderEvent.from_payload(item))
            page_token = payload.get("nextPageToken")
            if not page_token:
                listing.complete = True
                break

        if not listing.complete:
            logger.warning(
                "Event listing for calendar %s truncated after %s pages (account %s)",
                calendar_id,
                listing.pages,
                self.account_id,
            )
        return listing

    def create_event(self, calendar_id: str, event: Dict[str, Any]) -> ProviderEvent:
        payload = self._request("POST", f"calendars/{self._quote(calendar_id)}/events", json=event)
        return ProviderEvent.from_payload(payload)

    def update_event(self, calendar_id: str, event_id: str, changes: Dict[str, Any]) -> ProviderEvent:
        payload = self._request(
            "PATCH",
            f"calendars/{self._quote(calendar_id)}/events/{self._quote(event_id)}",
            json=changes,
        )
        return ProviderEvent.from_payload(payload)

    def watch_channel(
        self,
        calendar_id: str,
        channel_id: str,
        address: str,
        token: str,
        ttl: timedelta,
    ) -> ChannelRegistration:
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": address,
            "token": token,
            "params": {"ttl": str(int(ttl.total_seconds()))},
        }
        payload = self._request("POST", f"calendars/{self._quote(calendar_id)}/events/watch", json=body)
        expiration = payload.get("expiration")
        expires_at = None
        if expiration:
            expires_at = datetime.fromtimestamp(int(expiration) / 1000, tz=dt_timezone.utc)
        return ChannelRegistration(
            channel_id=payload.get("id", channel_id),
            resource_id=payload.get("resourceId", ""),
            expires_at=expires_at,
            resource_uri=payload.get("resourceUri", ""),
        )

    def stop_channel(self, channel_id: str, resource_id: str) -> bool:
        """Stop a push channel. Returns ``False`` if the provider no longer knows it."""

        try:
            self._request("POST", "channels/stop", json={"id": channel_id, "resourceId": resource_id})
        except ProviderNotFoundError:
            return False
        return True

    # --- transport ----------------------------------------------------
    @staticmethod
    def _quote(value: str) -> str:
        return quote(value, safe="")

    def _request(self, method: str, path: str, *, params=None, json=None) -> Dict[str, Any]:
        return call_with_retry(
            self._authorized_request,
            method,
            path,
            params=params,
            json=json,
            retry_on=(RateLimitedError, ProviderServerError),
        )

    def _authorized_request(self, method: str, path: str, *, params=None, json=None) -> Dict[str, Any]:
        token = self.token_manager.get_valid_access_token(self.account_id)
        response = self._send(method, path, token, params=params, json=json)
        if self._is_auth_failure(response):
            logger.info("Provider rejected token for account %s; forcing refresh", self.account_id)
            token = self.token_manager.force_refresh(self.account_id, rejected_token=token)
            response = self._send(method, path, token, params=params, json=json)
            if self._is_auth_failure(response):
                raise AuthError(
                    f"Provider rejected a freshly refreshed token ({response.status_code})",
                    account_id=self.account_id,
                )
        return self._handle_response(response)

    def _send(self, method, path, token, *, params=None, json=None) -> requests.Response:
        try:
            return self.session.request(
                method,
                f"{self.base_url}/{path}",
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                params=params,
                json=json,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderServerError(f"Transport error calling {path}: {exc}") from exc

    @staticmethod
    def _error_details(response: requests.Response):
        try:
            payload = response.json()
        except ValueError:
            return "", response.text[:200] if response.text else ""
        error = payload.get("error") if isinstance(payload, dict) else None
        if not isinstance(error, dict):
            return "", str(error or "")
        reasons = [item.get("reason", "") for item in error.get("errors", []) if isinstance(item, dict)]
        return (reasons[0] if reasons else error.get("status", "")), error.get("message", "")

    def _is_auth_failure(self, response: requests.Response) -> bool:
        if response.status_code == 401:
            return True
        if response.status_code == 403:
            reason, _ = self._error_details(response)
            return reason not in RATE_LIMIT_REASONS
        return False

    def _handle_response(self, response: requests.Response) -> Dict[str, Any]:
        status_code = response.status_code
        if status_code < 400:
            if status_code == 204 or not response.content:
                return {}
            return response.json()

        reason, message = self._error_details(response)
        description = f"Calendar API error {status_code}: {message or reason or 'unknown error'}"
        if status_code == 429 or (status_code == 403 and reason in RATE_LIMIT_REASONS):
            raise RateLimitedError(
                description,
                status_code=status_code,
                reason=reason,
                retry_after=self._retry_after(response),
            )
        if status_code >= 500:
            raise ProviderServerError(description, status_code=status_code, reason=reason)
        if status_code in (404, 410):
            raise ProviderNotFoundError(description, status_code=status_code, reason=reason)
        raise ProviderError(description, status_code=status_code, reason=reason)

    @staticmethod
    def _retry_after(response: requests.Response) -> Optional[timedelta]:
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            return timedelta(seconds=max(0, int(value)))
        except ValueError:
            return None


__all__ = [
    "CalendarClient",
    "ChannelRegistration",
    "EventListing",
    "ProviderCalendar",
    "ProviderEvent",
    "build_event_body",
]
