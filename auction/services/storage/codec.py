"""Кодеки полезной нагрузки кеша: сжатие и шифрование.

Кодек превращает строку в строку, поэтому их можно выстраивать в цепочку;
имена применённых кодеков пишутся в заголовок записи и снимаются в обратном
порядке. `decode` возвращает None, если формат нам не по зубам (новая версия
конверта), и бросает CacheCorruptedError на битых данных.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import os
import zlib
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from auction.exceptions import CacheCorruptedError

ENVELOPE_VERSION = 1
SALT_SIZE = 16
IV_SIZE = 12
KEY_SIZE = 32


class Codec(Protocol):
    name: str

    async def encode(self, payload: str, owner: str) -> str: ...

    async def decode(self, payload: str, owner: str) -> str | None: ...


class ZlibCodec:
    """zlib + base64; сжатие синхронное, данные небольшие."""

    name = "zlib"

    def __init__(self, level: int = 6) -> None:
        self.level = level

    async def encode(self, payload: str, owner: str) -> str:
        compressed = zlib.compress(payload.encode("utf-8"), self.level)
        return base64.b64encode(compressed).decode("ascii")

    async def decode(self, payload: str, owner: str) -> str | None:
        try:
            return zlib.decompress(base64.b64decode(payload, validate=True)).decode("utf-8")
        except (binascii.Error, zlib.error, UnicodeDecodeError) as exc:
            raise CacheCorruptedError(f"Не удалось распаковать запись: {exc}") from exc


class AesGcmCodec:
    """AES-256-GCM с ключом из PBKDF2-HMAC-SHA256(адрес владельца, соль).

    Соль и IV случайные на каждую запись и хранятся в конверте
    `{data, salt, iv, version}` рядом с шифротекстом.
    """

    name = "aes-gcm"

    def __init__(self, iterations: int = 100_000) -> None:
        self.iterations = iterations

    def _derive_key(self, owner: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(owner.lower().encode("utf-8"))

    async def encode(self, payload: str, owner: str) -> str:
        salt = os.urandom(SALT_SIZE)
        iv = os.urandom(IV_SIZE)
        key = await asyncio.to_thread(self._derive_key, owner, salt)
        ciphertext = AESGCM(key).encrypt(iv, payload.encode("utf-8"), None)
        envelope = {
            "data": base64.b64encode(ciphertext).decode("ascii"),
            "salt": base64.b64encode(salt).decode("ascii"),
            "iv": base64.b64encode(iv).decode("ascii"),
            "version": ENVELOPE_VERSION,
        }
        return json.dumps(envelope, separators=(",", ":"))

    async def decode(self, payload: str, owner: str) -> str | None:
        try:
            envelope = json.loads(payload)
            version = int(envelope.get("version", 0))
            if version > ENVELOPE_VERSION:
                return None
            ciphertext = base64.b64decode(envelope["data"], validate=True)
            salt = base64.b64decode(envelope["salt"], validate=True)
            iv = base64.b64decode(envelope["iv"], validate=True)
        except (ValueError, TypeError, KeyError, AttributeError, binascii.Error) as exc:
            raise CacheCorruptedError(f"Битый конверт шифрования: {exc}") from exc
        key = await asyncio.to_thread(self._derive_key, owner, salt)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
        except (InvalidTag, ValueError) as exc:
            raise CacheCorruptedError("Не удалось расшифровать запись") from exc
        return plaintext.decode("utf-8")


__all__ = ["AesGcmCodec", "Codec", "ZlibCodec"]
