"""Custom model fields used across the project."""

from __future__ import annotations

import logging

from django.db import models

from .security import EncryptionError, decrypt, encrypt

logger = logging.getLogger(__name__)


class EncryptedTextField(models.TextField):
    """A ``TextField`` that transparently encrypts values at rest.

    Stored values carry the ``enc::`` prefix. A value that can no longer be
    decrypted (for example after its key was dropped from
    ``FIELD_ENCRYPTION_KEYS``) reads back as ``None`` so callers treat the
    secret as missing instead of leaking ciphertext into provider requests.
    """

    prefix = "enc::"

    def _encrypt(self, value):
        if value in (None, ""):
            return value
        if isinstance(value, str) and value.startswith(self.prefix):
            return value
        return f"{self.prefix}{encrypt(str(value))}"

    def _decrypt(self, value):
        if value in (None, ""):
            return value
        if not (isinstance(value, str) and value.startswith(self.prefix)):
            return value
        try:
            return decrypt(value[len(self.prefix):])
        except EncryptionError:
            logger.warning("Unable to decrypt %s column; treating value as missing", self.name)
            return None

    def from_db_value(self, value, expression, connection):
        return self._decrypt(value)

    def to_python(self, value):
        return self._decrypt(value)

    def get_prep_value(self, value):
        value = super().get_prep_value(value)
        return self._encrypt(value)

    def value_to_string(self, obj):
        return self._encrypt(self.value_from_object(obj))


__all__ = ["EncryptedTextField"]
