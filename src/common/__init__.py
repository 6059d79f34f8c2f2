"""Shared security helpers."""

from .crypto import DescriptorCipher, InvalidToken, get_descriptor_cipher, reset_descriptor_cipher

__all__ = [
    "DescriptorCipher",
    "InvalidToken",
    "get_descriptor_cipher",
    "reset_descriptor_cipher",
]
