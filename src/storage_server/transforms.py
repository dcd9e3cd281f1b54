"""Byte transforms applied between the caller's plaintext and the content store.

Ingest: plaintext -> compress -> encrypt -> persisted bytes.
Read:   persisted bytes -> decrypt -> decompress -> plaintext.

The order is the same for every object. Whole-payload helpers are used by
ingest and the hash backfill; the incremental `Decryptor`/`Decompressor`
objects are used by the streaming read so large objects are never buffered.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import zlib

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from storage_server.errors import InternalError, UnauthorizedError
from storage_server.models.enums import CompressionAlgorithm

KEY_BYTES = 16  # AES-128
NONCE_BYTES = 16

# zlib window bits selecting the container format
_WBITS = {
    CompressionAlgorithm.DEFLATE: zlib.MAX_WBITS,
    CompressionAlgorithm.GZIP: zlib.MAX_WBITS | 16,
}


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ── Compression ──────────────────────────────────────────────────────────────


def _level(level: int | None) -> int:
    if level is not None and 1 <= level <= 9:
        return level
    return zlib.Z_DEFAULT_COMPRESSION


def compress(data: bytes, algorithm: CompressionAlgorithm, level: int | None = None) -> bytes:
    """Compress `data` with the given container format.

    Raises:
        InternalError: zlib rejected the input or parameters.
    """
    if algorithm is CompressionAlgorithm.NONE:
        return data
    try:
        compressor = zlib.compressobj(_level(level), zlib.DEFLATED, _WBITS[algorithm])
        return compressor.compress(data) + compressor.flush()
    except (zlib.error, ValueError) as e:
        raise InternalError(f"Compression failed: {e}") from e


def decompress(data: bytes, algorithm: CompressionAlgorithm) -> bytes:
    decompressor = Decompressor(algorithm)
    return decompressor.feed(data) + decompressor.flush()


class Decompressor:
    """Incremental inverse of `compress`. A no-op for `none`."""

    def __init__(self, algorithm: CompressionAlgorithm) -> None:
        self._obj = None
        if algorithm is not CompressionAlgorithm.NONE:
            self._obj = zlib.decompressobj(_WBITS[algorithm])

    def feed(self, chunk: bytes) -> bytes:
        if self._obj is None:
            return chunk
        try:
            return self._obj.decompress(chunk)
        except zlib.error as e:
            raise InternalError(f"Decompression failed: {e}") from e

    def flush(self) -> bytes:
        if self._obj is None:
            return b""
        try:
            return self._obj.flush()
        except zlib.error as e:
            raise InternalError(f"Decompression failed: {e}") from e


# ── Encryption ───────────────────────────────────────────────────────────────


def generate_key() -> str:
    """Fresh per-object key as 32 hex characters."""
    return secrets.token_hex(KEY_BYTES)


def key_digest(key: str) -> str:
    return sha256_hex(key.encode("utf-8"))


def keys_match(expected_digest: str | None, supplied_key: str | None) -> bool:
    """True when the object is unencrypted or `supplied_key` is its key."""
    if expected_digest is None:
        return True
    if not supplied_key:
        return False
    return hmac.compare_digest(expected_digest, key_digest(supplied_key))


def _key_bytes(key: str) -> bytes:
    try:
        raw = bytes.fromhex(key)
    except ValueError:
        raw = b""
    if len(raw) != KEY_BYTES:
        raise UnauthorizedError("Incorrect decryption key!")
    return raw


def encrypt(data: bytes, key: str) -> bytes:
    """AES-128-CTR with a random nonce stored in front of the ciphertext."""
    nonce = secrets.token_bytes(NONCE_BYTES)
    encryptor = Cipher(algorithms.AES(_key_bytes(key)), modes.CTR(nonce)).encryptor()
    return nonce + encryptor.update(data) + encryptor.finalize()


def decrypt(data: bytes, key: str) -> bytes:
    decryptor = Decryptor(key)
    return decryptor.feed(data) + decryptor.flush()


class Decryptor:
    """Incremental inverse of `encrypt`.

    The first NONCE_BYTES of the stream are the nonce; they may arrive split
    across chunks.
    """

    def __init__(self, key: str) -> None:
        self._key = _key_bytes(key)
        self._pending = b""
        self._cipher = None

    def feed(self, chunk: bytes) -> bytes:
        if self._cipher is None:
            self._pending += chunk
            if len(self._pending) < NONCE_BYTES:
                return b""
            nonce, chunk = self._pending[:NONCE_BYTES], self._pending[NONCE_BYTES:]
            self._pending = b""
            self._cipher = Cipher(algorithms.AES(self._key), modes.CTR(nonce)).decryptor()
        return self._cipher.update(chunk)

    def flush(self) -> bytes:
        if self._cipher is None:
            raise InternalError("Encrypted object is truncated")
        return self._cipher.finalize()


class Passthrough:
    """Stand-in decryptor for unencrypted objects."""

    def feed(self, chunk: bytes) -> bytes:
        return chunk

    def flush(self) -> bytes:
        return b""
