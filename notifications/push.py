"""Push transports used by the notification dispatcher."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Sequence

import requests
from django.conf import settings

from common.exceptions import DeliveryTransientError
from common.retry import call_with_retry
from common.utils import chunked

__all__ = [
    "PushConfigurationError",
    "PushMessage",
    "DeliveryStatus",
    "DeliveryReceipt",
    "BasePushTransport",
    "ConsolePushTransport",
    "ExpoPushTransport",
    "get_push_transport",
]

logger = logging.getLogger(__name__)


class PushConfigurationError(RuntimeError):
    """Raised when the push subsystem is misconfigured."""


@dataclass(frozen=True)
class PushMessage:
    token: str
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)


class DeliveryStatus(str, enum.Enum):
    OK = "ok"
    TOKEN_INVALID = "token_invalid"
    ERROR = "error"


@dataclass(frozen=True)
class DeliveryReceipt:
    token: str
    status: DeliveryStatus
    message: str = ""


class BasePushTransport:
    """Base class for push transports."""

    def send(self, messages: Sequence[PushMessage]) -> List[DeliveryReceipt]:  # pragma: no cover - interface
        raise NotImplementedError


class ConsolePushTransport(BasePushTransport):
    """A transport that simply prints messages to stdout."""

    def send(self, messages: Sequence[PushMessage]) -> List[DeliveryReceipt]:
        receipts = []
        for message in messages:
            print(f"Sending push to {message.token}: {message.title} - {message.body}")
            receipts.append(DeliveryReceipt(token=message.token, status=DeliveryStatus.OK))
        return receipts


class ExpoPushTransport(BasePushTransport):
    """Adapter for the Expo push service.

    Each batch is retried on its own, so a transient failure never re-sends a
    batch that was already accepted. A batch that stays unavailable after the
    last attempt is reported as ``ERROR`` receipts.
    """

    batch_size = 100

    def __init__(self, url: str, access_token: str = "", timeout: float = 8) -> None:
        self.url = url
        self.access_token = access_token
        self.timeout = timeout

    def send(self, messages: Sequence[PushMessage]) -> List[DeliveryReceipt]:
        receipts: List[DeliveryReceipt] = []
        for batch in chunked(messages, self.batch_size):
            try:
                receipts.extend(call_with_retry(self._send_batch, batch, retry_on=(DeliveryTransientError,)))
            except DeliveryTransientError as exc:
                logger.error("Expo push batch of %s message(s) failed: %s", len(batch), exc)
                receipts.extend(
                    DeliveryReceipt(token=message.token, status=DeliveryStatus.ERROR, message=str(exc))
                    for message in batch
                )
        return receipts

    def _send_batch(self, messages: List[PushMessage]) -> List[DeliveryReceipt]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        body = [
            {"to": message.token, "title": message.title, "body": message.body, "data": message.data}
            for message in messages
        ]
        try:
            response = requests.post(self.url, json=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise DeliveryTransientError(f"Expo push request failed: {exc}") from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise DeliveryTransientError(f"Expo push service returned {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise DeliveryTransientError("Expo push service returned invalid JSON") from exc
        if response.status_code != 200:
            errors = payload.get("errors") or []
            detail = errors[0].get("message") if errors else response.status_code
            logger.error("Expo push rejected the batch: %s", detail)
            return [
                DeliveryReceipt(token=message.token, status=DeliveryStatus.ERROR, message=str(detail))
                for message in messages
            ]

        tickets = payload.get("data") or []
        receipts = []
        for message, ticket in zip(messages, tickets):
            if ticket.get("status") == "ok":
                receipts.append(DeliveryReceipt(token=message.token, status=DeliveryStatus.OK))
                continue
            details = ticket.get("details") or {}
            status = (
                DeliveryStatus.TOKEN_INVALID
                if details.get("error") == "DeviceNotRegistered"
                else DeliveryStatus.ERROR
            )
            receipts.append(
                DeliveryReceipt(token=message.token, status=status, message=ticket.get("message", ""))
            )
        return receipts


@lru_cache(maxsize=1)
def get_push_transport() -> BasePushTransport:
    """Return an instance of the configured push transport."""

    provider_name = getattr(settings, "PUSH_PROVIDER", "console") or "console"
    normalized = provider_name.lower()

    if normalized == "console":
        return ConsolePushTransport()

    if normalized == "expo":
        return ExpoPushTransport(
            url=getattr(settings, "EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send"),
            access_token=getattr(settings, "EXPO_ACCESS_TOKEN", ""),
            timeout=getattr(settings, "PUSH_TIMEOUT", 8),
        )

    raise PushConfigurationError(f"Unsupported push provider '{provider_name}'.")
