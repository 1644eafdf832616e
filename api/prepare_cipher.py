#!/usr/bin/env python3
"""
CloudBackup Prepare - cipher stage
==================================
AES in OFB mode with an all-zero IV, keyed by a base64url secret.

The zero IV is what the backup agent has always written. It is only sound
while every key encrypts exactly one artifact; changing it here would make
every existing artifact undecodable, so it stays as is.

A wrong key of a valid length is not detectable: the stage happily emits
garbage. Only malformed base64url and unsupported key sizes raise.
"""

import base64
import binascii
import re

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from prepare_errors import KeyDecodeError, KeyLengthError

AES_BLOCK_SIZE = 16
VALID_KEY_SIZES = (16, 24, 32)
ZERO_IV = bytes(AES_BLOCK_SIZE)

_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]*={0,2}$")


def decode_key(key: str) -> bytes:
    """Decode a base64url key (padding optional) and check it is an AES key size."""
    text = key.strip()
    if not text or not _B64URL_RE.match(text):
        raise KeyDecodeError("encryption key is not valid base64url", parameter="encryption_key")
    text = text.rstrip("=")
    text += "=" * (-len(text) % 4)
    try:
        raw = base64.b64decode(text, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KeyDecodeError(
            f"encryption key is not valid base64url ({exc})", parameter="encryption_key"
        ) from None
    if len(raw) not in VALID_KEY_SIZES:
        raise KeyLengthError(
            f"decoded key is {len(raw)} bytes, expected one of {', '.join(map(str, VALID_KEY_SIZES))}",
            parameter="encryption_key",
            key_bytes=len(raw),
        )
    return raw


def make_keystream(key_bytes: bytes):
    """OFB decryptor; OFB is symmetric so the same object also encrypts."""
    return Cipher(algorithms.AES(key_bytes), modes.OFB(ZERO_IV)).decryptor()


class CipherStageReader:
    """Reader that XORs everything read from `inner` with the OFB keystream."""

    def __init__(self, inner, keystream):
        self._inner = inner
        self._keystream = keystream
        self.bytes_in = 0

    def read(self, size: int = -1) -> bytes:
        data = self._inner.read(size)
        if not data:
            return b""
        self.bytes_in += len(data)
        return self._keystream.update(data)


def build_cipher_stage(key: str, inner):
    if key == "":
        return inner
    return CipherStageReader(inner, make_keystream(decode_key(key)))
