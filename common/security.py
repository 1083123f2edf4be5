"""Encryption helpers for credentials stored at rest."""

from __future__ import annotations

import base64
import hashlib
from functools import lru_cache
from typing import List

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from django.conf import settings


class EncryptionError(Exception):
    """Raised when encrypting or decrypting data fails."""


def _derive_key(secret: str) -> bytes:
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def _configured_keys() -> List[bytes]:
    keys = [key.encode("utf-8") for key in getattr(settings, "FIELD_ENCRYPTION_KEYS", []) if key]
    # The SECRET_KEY derived key stays last so rows written before rotation still decrypt.
    keys.append(_derive_key(settings.SECRET_KEY))
    return keys


@lru_cache(maxsize=1)
def get_fernet() -> MultiFernet:
    """Return a ``MultiFernet`` that encrypts with the newest configured key."""

    try:
        return MultiFernet([Fernet(key) for key in _configured_keys()])
    except (TypeError, ValueError) as exc:
        raise EncryptionError("FIELD_ENCRYPTION_KEYS contains an invalid Fernet key") from exc


def encrypt(text: str) -> str:
    """Encrypt *text* returning a URL safe base64 string."""

    if text is None:
        raise ValueError("`text` must be a string, not None")
    return get_fernet().encrypt(text.encode("utf-8")).decode("utf-8")


def decrypt(token: str) -> str:
    """Decrypt *token* returning the original string."""

    if token is None:
        raise ValueError("`token` must be a string, not None")
    try:
        return get_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise EncryptionError("Invalid encryption token") from exc


__all__ = ["EncryptionError", "decrypt", "encrypt", "get_fernet"]
