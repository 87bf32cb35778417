"""Unit tests for the AEAD primitives and binary conventions."""

import struct
from unittest.mock import patch

import pytest

from pagevault.core.exceptions import ChunkIntegrityError, ResourceExhausted
from pagevault.security.crypto import (
    UnwrapFailed,
    chunk_aad,
    chunk_nonce,
    decrypt_chunk_raw,
    encrypt_chunk,
    generate_base_nonce,
    generate_dek,
    random_bytes,
    slot_aad,
    unwrap_dek,
    wrap_dek,
    zeroize,
)

DEK = bytes(range(32))
BASE_NONCE = bytes(range(100, 112))
EXPORT_ID = b"X" * 16


# ==============================================================================
# Tests: nonce and AAD layout
# ==============================================================================

def test_chunk_nonce_substitutes_index():
    nonce = chunk_nonce(BASE_NONCE, 7)
    assert len(nonce) == 12
    assert nonce[:8] == BASE_NONCE[:8]
    assert nonce[8:] == struct.pack(">I", 7)


def test_chunk_nonce_ignores_base_suffix():
    # the last four base bytes are overwritten, never XORed
    other = BASE_NONCE[:8] + b"\xff\xff\xff\xff"
    assert chunk_nonce(BASE_NONCE, 3) == chunk_nonce(other, 3)


def test_chunk_nonces_are_distinct():
    nonces = {chunk_nonce(BASE_NONCE, i) for i in range(2000)}
    assert len(nonces) == 2000
    assert chunk_nonce(BASE_NONCE, 0xFFFFFFFF)[8:] == b"\xff\xff\xff\xff"


def test_chunk_nonce_index_out_of_range():
    with pytest.raises(ValueError):
        chunk_nonce(BASE_NONCE, 2 ** 32)
    with pytest.raises(ValueError):
        chunk_nonce(BASE_NONCE, -1)


def test_aad_layouts():
    aad = chunk_aad(EXPORT_ID, 5)
    assert len(aad) == 21
    assert aad == EXPORT_ID + b"\x00\x00\x00\x05" + b"\x02"
    assert slot_aad(EXPORT_ID, 258) == EXPORT_ID + b"\x00\x00\x01\x02"


# ==============================================================================
# Tests: chunk encryption
# ==============================================================================

def test_chunk_encrypt_decrypt():
    ct = encrypt_chunk(DEK, BASE_NONCE, EXPORT_ID, 0, b"plaintext")
    assert len(ct) == len(b"plaintext") + 16
    assert decrypt_chunk_raw(DEK, BASE_NONCE, EXPORT_ID, 0, ct) == b"plaintext"


def test_empty_chunk_still_has_a_tag():
    ct = encrypt_chunk(DEK, BASE_NONCE, EXPORT_ID, 0, b"")
    assert len(ct) == 16
    assert decrypt_chunk_raw(DEK, BASE_NONCE, EXPORT_ID, 0, ct) == b""


def test_chunk_bound_to_index():
    ct = encrypt_chunk(DEK, BASE_NONCE, EXPORT_ID, 1, b"data")
    with pytest.raises(ChunkIntegrityError) as exc:
        decrypt_chunk_raw(DEK, BASE_NONCE, EXPORT_ID, 2, ct)
    assert exc.value.index == 2


def test_chunk_bound_to_export_id():
    ct = encrypt_chunk(DEK, BASE_NONCE, EXPORT_ID, 0, b"data")
    with pytest.raises(ChunkIntegrityError):
        decrypt_chunk_raw(DEK, BASE_NONCE, b"Y" * 16, 0, ct)


def test_chunk_tag_flip_detected():
    ct = bytearray(encrypt_chunk(DEK, BASE_NONCE, EXPORT_ID, 0, b"data"))
    ct[-1] ^= 0x01
    with pytest.raises(ChunkIntegrityError):
        decrypt_chunk_raw(DEK, BASE_NONCE, EXPORT_ID, 0, bytes(ct))


def test_chunk_shorter_than_tag():
    with pytest.raises(ChunkIntegrityError, match="shorter"):
        decrypt_chunk_raw(DEK, BASE_NONCE, EXPORT_ID, 0, b"\x00" * 15)


# ==============================================================================
# Tests: DEK wrapping
# ==============================================================================

def test_wrap_unwrap_dek():
    kek = b"k" * 32
    nonce = b"n" * 12
    wrapped = wrap_dek(kek, nonce, bytearray(DEK), EXPORT_ID, 3)
    assert len(wrapped) == 48
    assert unwrap_dek(kek, nonce, wrapped, EXPORT_ID, 3) == bytearray(DEK)


def test_unwrap_bound_to_slot_id_and_kek():
    kek = b"k" * 32
    nonce = b"n" * 12
    wrapped = wrap_dek(kek, nonce, DEK, EXPORT_ID, 3)
    with pytest.raises(UnwrapFailed):
        unwrap_dek(kek, nonce, wrapped, EXPORT_ID, 4)
    with pytest.raises(UnwrapFailed):
        unwrap_dek(b"j" * 32, nonce, wrapped, EXPORT_ID, 3)


# ==============================================================================
# Tests: randomness and zeroize
# ==============================================================================

def test_generate_dek_is_mutable_and_fresh():
    a, b = generate_dek(), generate_dek()
    assert isinstance(a, bytearray) and len(a) == 32
    assert a != b
    assert len(generate_base_nonce()) == 12


def test_zeroize_wipes_in_place():
    buf = bytearray(b"secret key material")
    zeroize(buf)
    assert buf == bytearray(len(b"secret key material"))
    zeroize(None)


def test_random_source_failure_is_resource_exhausted():
    with patch("pagevault.security.crypto.os.urandom", side_effect=OSError("no entropy")):
        with pytest.raises(ResourceExhausted):
            random_bytes(16)


def test_short_random_read_is_resource_exhausted():
    with patch("pagevault.security.crypto.os.urandom", return_value=b"short"):
        with pytest.raises(ResourceExhausted):
            random_bytes(16)
