import logging
from datetime import timedelta
from itertools import islice
from typing import Iterable, Iterator, List, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.conf import settings

logger = logging.getLogger("common")

T = TypeVar("T")


def resolve_timedelta_setting(name: str, default: timedelta) -> timedelta:
    """
    Read a duration setting that may be a ``timedelta`` or a number of seconds.
    Invalid or negative values fall back to ``default`` with a warning.
    """
    value = getattr(settings, name, default)
    if isinstance(value, timedelta):
        result = value
    else:
        try:
            result = timedelta(seconds=float(value))
        except (TypeError, ValueError):
            logger.warning("Setting %s=%r is not a duration; using %s", name, value, default)
            return default
    if result < timedelta(0):
        logger.warning("Setting %s is negative; using %s", name, default)
        return default
    return result


def chunked(items: Iterable[T], size: int) -> Iterator[List[T]]:
    """Yield successive lists of at most ``size`` items."""
    if size < 1:
        raise ValueError("size must be at least 1")
    iterator = iter(items)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk


def resolve_zone(name: str) -> ZoneInfo:
    """Return the IANA zone ``name``, or UTC when it is empty or unknown."""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")
