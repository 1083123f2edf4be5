"""Cache backed advisory locks.

``cache.add`` is atomic on Redis and on the local-memory backend, so at most
one holder can own a key at a time. Locks expire after ``ttl`` seconds in
case the holder dies without releasing.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from django.core.cache import cache

logger = logging.getLogger(__name__)


def acquire_lock(key: str, ttl: int) -> Optional[str]:
    """Try to take ``key``; return an owner token or ``None`` when held."""

    token = uuid.uuid4().hex
    if cache.add(key, token, timeout=ttl):
        return token
    return None


def release_lock(key: str, token: str) -> bool:
    """Release ``key`` only if ``token`` still owns it."""

    if cache.get(key) != token:
        logger.warning("Lock %s expired or changed owner before release", key)
        return False
    cache.delete(key)
    return True


def is_locked(key: str) -> bool:
    return cache.get(key) is not None


@contextmanager
def advisory_lock(key: str, ttl: int) -> Iterator[bool]:
    """Yield ``True`` when the lock was acquired, ``False`` otherwise.

    Usage::

        with advisory_lock("calsync:sync-lock:42", ttl=900) as acquired:
            if not acquired:
                return
            ...
    """

    token = acquire_lock(key, ttl)
    try:
        yield token is not None
    finally:
        if token is not None:
            release_lock(key, token)


__all__ = ["acquire_lock", "advisory_lock", "is_locked", "release_lock"]
