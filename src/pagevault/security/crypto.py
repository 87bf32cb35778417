"""AEAD primitives shared by the archive producer and consumer.

Binary conventions (all integers big-endian):
- chunk nonce: base_nonce[:8] || u32(chunk_index)            (12 bytes)
- chunk AAD:   export_id || u32(chunk_index) || u8(version)  (21 bytes)
- slot AAD:    export_id || u32(slot_id)                     (20 bytes)
- wrapped DEK: AES-256-GCM(KEK, slot nonce, DEK, slot AAD)   (32 + 16 bytes)

The chunk index is written over the last four nonce bytes rather than
combined with them, so every index below 2**32 gives a distinct nonce.
"""
import os
import struct
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from pagevault.core.exceptions import ChunkIntegrityError, ResourceExhausted
from pagevault.core.models import (
    EXPORT_ID_LEN,
    KEY_LEN,
    MAX_INDEX,
    NONCE_LEN,
    SCHEMA_VERSION,
    TAG_LEN,
    WRAPPED_DEK_LEN,
)


class UnwrapFailed(Exception):
    """Internal signal: a slot's tag did not verify under the derived KEK."""


def random_bytes(length: int) -> bytes:
    try:
        data = os.urandom(length)
    except (OSError, NotImplementedError) as exc:
        raise ResourceExhausted("secure random source unavailable") from exc
    if len(data) != length:
        raise ResourceExhausted("secure random source returned short read")
    return data


def generate_dek() -> bytearray:
    return bytearray(random_bytes(KEY_LEN))


def generate_export_id() -> bytes:
    return random_bytes(EXPORT_ID_LEN)


def generate_base_nonce() -> bytes:
    return random_bytes(NONCE_LEN)


def zeroize(buf: Optional[bytearray]) -> None:
    """Overwrite a mutable key buffer in place."""
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0


def chunk_nonce(base_nonce: bytes, index: int) -> bytes:
    if not 0 <= index <= MAX_INDEX:
        raise ValueError("chunk index out of range")
    return bytes(base_nonce[:8]) + struct.pack(">I", index)


def chunk_aad(export_id: bytes, index: int, version: int = SCHEMA_VERSION) -> bytes:
    return bytes(export_id) + struct.pack(">IB", index, version)


def slot_aad(export_id: bytes, slot_id: int) -> bytes:
    return bytes(export_id) + struct.pack(">I", slot_id)


def encrypt_chunk(dek, base_nonce: bytes, export_id: bytes, index: int, plaintext: bytes) -> bytes:
    aead = AESGCM(dek)
    return aead.encrypt(chunk_nonce(base_nonce, index), plaintext, chunk_aad(export_id, index))


def decrypt_chunk_raw(dek, base_nonce: bytes, export_id: bytes, index: int, ciphertext: bytes) -> bytes:
    if len(ciphertext) < TAG_LEN:
        raise ChunkIntegrityError(index, "chunk shorter than authentication tag")
    aead = AESGCM(dek)
    try:
        return aead.decrypt(chunk_nonce(base_nonce, index), ciphertext, chunk_aad(export_id, index))
    except InvalidTag:
        raise ChunkIntegrityError(index) from None


def wrap_dek(kek, nonce: bytes, dek, export_id: bytes, slot_id: int) -> bytes:
    wrapped = AESGCM(kek).encrypt(nonce, bytes(dek), slot_aad(export_id, slot_id))
    assert len(wrapped) == WRAPPED_DEK_LEN
    return wrapped


def unwrap_dek(kek, nonce: bytes, wrapped: bytes, export_id: bytes, slot_id: int) -> bytearray:
    try:
        return bytearray(AESGCM(kek).decrypt(nonce, wrapped, slot_aad(export_id, slot_id)))
    except InvalidTag:
        raise UnwrapFailed() from None
