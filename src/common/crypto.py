"""Fernet helpers for encrypting face descriptors at rest."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Mapping, Union

import numpy as np
from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

BytesLike = Union[bytes, bytearray, memoryview]

FACE_KEY_SETTING = "FACE_DATA_ENCRYPTION_KEY"


def _coerce_key_bytes(key: BytesLike | str) -> bytes:
    if isinstance(key, str):
        return key.encode()
    return bytes(key)


@dataclass(slots=True)
class _FernetWrapper:
    """Lazily instantiate a Fernet cipher from a Django setting."""

    setting_name: str
    key_override: BytesLike | str | None = None
    _cipher: Fernet | None = None

    def _resolve_key(self) -> bytes:
        key = self.key_override
        if key is None:
            key = getattr(settings, self.setting_name, None)
        if not key:
            raise ImproperlyConfigured(f"{self.setting_name} is not configured.")

        key_bytes = _coerce_key_bytes(key)
        try:
            Fernet(key_bytes)
        except (TypeError, ValueError) as exc:
            raise ImproperlyConfigured(f"{self.setting_name} is invalid.") from exc
        return key_bytes

    def _get_cipher(self) -> Fernet:
        if self._cipher is None:
            self._cipher = Fernet(self._resolve_key())
        return self._cipher

    def encrypt(self, payload: BytesLike) -> bytes:
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise TypeError("encrypt expects a bytes-like object")
        return self._get_cipher().encrypt(bytes(payload))

    def decrypt(self, token: BytesLike) -> bytes:
        if not isinstance(token, (bytes, bytearray, memoryview)):
            raise TypeError("decrypt expects a bytes-like object")
        return self._get_cipher().decrypt(bytes(token))


class DescriptorCipher:
    """Encrypt face descriptors (single vectors or pose mappings) with Fernet.

    The key defaults to the ``FACE_DATA_ENCRYPTION_KEY`` setting and is only
    resolved on first use, so importing this module never needs the key.
    """

    def __init__(self, key: BytesLike | str | None = None) -> None:
        self._helper = _FernetWrapper(FACE_KEY_SETTING, key_override=key)

    def encrypt_descriptor(self, descriptor: np.ndarray) -> bytes:
        if not isinstance(descriptor, np.ndarray):
            raise TypeError("encrypt_descriptor expects a numpy.ndarray")
        return self._helper.encrypt(descriptor.astype(np.float64).reshape(-1).tobytes())

    def decrypt_descriptor(self, token: BytesLike) -> np.ndarray:
        return np.frombuffer(self._helper.decrypt(token), dtype=np.float64).copy()

    def encrypt_pose_descriptors(self, descriptors: Mapping[str, np.ndarray]) -> bytes:
        """Encrypt ``{pose: descriptor}`` as one JSON token."""

        payload = {
            str(getattr(pose, "value", pose)): np.asarray(vector, dtype=np.float64).reshape(-1).tolist()
            for pose, vector in descriptors.items()
        }
        return self._helper.encrypt(json.dumps(payload).encode("utf-8"))

    def decrypt_pose_descriptors(self, token: BytesLike) -> dict[str, np.ndarray]:
        payload = json.loads(self._helper.decrypt(token).decode("utf-8"))
        return {pose: np.asarray(values, dtype=np.float64) for pose, values in payload.items()}


_default_cipher: DescriptorCipher | None = None


def get_descriptor_cipher() -> DescriptorCipher:
    """Return the process-wide cipher keyed by ``FACE_DATA_ENCRYPTION_KEY``."""

    global _default_cipher
    if _default_cipher is None:
        _default_cipher = DescriptorCipher()
    return _default_cipher


def reset_descriptor_cipher() -> None:
    """Forget the cached cipher, e.g. after the key setting changes in tests."""

    global _default_cipher
    _default_cipher = None


__all__ = [
    "DescriptorCipher",
    "InvalidToken",
    "get_descriptor_cipher",
    "reset_descriptor_cipher",
]
