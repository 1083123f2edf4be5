"""Bounded exponential backoff for calls to external services."""

from __future__ import annotations

import logging
from typing import Callable, Tuple, Type, TypeVar

from django.conf import settings
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_retry(retry_state) -> None:
    error = retry_state.outcome.exception()
    logger.warning(
        "Retrying %s after %s (attempt %s): %s",
        getattr(retry_state.fn, "__qualname__", retry_state.fn),
        type(error).__name__,
        retry_state.attempt_number,
        error,
    )


def build_retrying(retry_on: Tuple[Type[BaseException], ...], *, attempts: int = None) -> Retrying:
    """Return a ``Retrying`` controller configured from settings.

    The last exception is re-raised unchanged once attempts are exhausted.
    """

    return Retrying(
        stop=stop_after_attempt(attempts or getattr(settings, "PROVIDER_MAX_ATTEMPTS", 3)),
        wait=wait_exponential(
            multiplier=getattr(settings, "PROVIDER_RETRY_INITIAL_DELAY", 0.5),
            max=getattr(settings, "PROVIDER_RETRY_MAX_DELAY", 8.0),
        )
        + wait_random(0, getattr(settings, "PROVIDER_RETRY_JITTER", 0.5)),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry,
        reraise=True,
    )


def call_with_retry(func: Callable[..., T], *args, retry_on, attempts: int = None, **kwargs) -> T:
    """Call ``func`` retrying on ``retry_on`` exceptions with backoff and jitter."""

    return build_retrying(retry_on, attempts=attempts)(func, *args, **kwargs)


__all__ = ["build_retrying", "call_with_retry"]
