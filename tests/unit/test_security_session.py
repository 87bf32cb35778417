"""
Unit tests for the unlock session.
"""

from unittest.mock import patch

import pytest

from pagevault.core.exceptions import InvariantViolation, SessionLockedError
from pagevault.core.models import Compression, ExportEnvelope, KdfParams, KeySlot, SlotType
from pagevault.security.session import SessionState, UnlockSession


# ==============================================================================
# Fixtures
# ==============================================================================

def _slot(slot_id):
    return KeySlot(
        id=slot_id, label="s", slot_type=SlotType.PASSWORD,
        salt=bytes([slot_id]) * 16, nonce=bytes([slot_id]) * 12, wrapped_dek=b"w" * 48,
    )


@pytest.fixture
def envelope():
    return ExportEnvelope(
        export_id=b"E" * 16,
        base_nonce=b"N" * 12,
        kdf_params=KdfParams(),
        compression=Compression.DEFLATE,
        chunk_size=1024,
        chunk_count=1,
        key_slots=(_slot(0), _slot(1)),
    )


@pytest.fixture
def session(envelope):
    return UnlockSession(envelope, ttl_seconds=60)


# ==============================================================================
# Tests: Locking & Unlocking
# ==============================================================================

def test_new_session_is_locked(session):
    assert session.state is SessionState.AWAITING_SECRET
    assert not session.is_unlocked
    with pytest.raises(SessionLockedError, match="Session is locked"):
        session.dek


def test_unlock_with_key(session):
    key = bytearray(b"k" * 32)
    session.unlock_with_key(key, slot_id=1)
    assert session.is_unlocked
    assert session.dek is key
    assert session.slot_id == 1
    assert session.state is SessionState.UNLOCKED


def test_unlock_with_key_rejects_wrong_length(session):
    with pytest.raises(ValueError):
        session.unlock_with_key(bytearray(16), slot_id=0)


def test_lock_zeroizes_key(session):
    key = bytearray(b"k" * 32)
    session.unlock_with_key(key, slot_id=0)
    session.lock()
    assert key == bytearray(32)
    assert session.state is SessionState.LOCKED
    with pytest.raises(SessionLockedError):
        session.dek


def test_context_manager_locks_on_exit(session):
    key = bytearray(b"k" * 32)
    with session:
        session.unlock_with_key(key, slot_id=0)
    assert not session.is_unlocked
    assert key == bytearray(32)


def test_abort_records_state(session):
    session.unlock_with_key(bytearray(b"k" * 32), slot_id=0)
    session.abort()
    assert session.state is SessionState.ABORTED
    assert not session.is_unlocked


# ==============================================================================
# Tests: Expiry
# ==============================================================================

def test_expired_session_auto_locks(session):
    key = bytearray(b"k" * 32)
    with patch("pagevault.security.session.time.time", return_value=1000.0):
        session.unlock_with_key(key, slot_id=0)
    with patch("pagevault.security.session.time.time", return_value=1061.0):
        assert not session.is_unlocked
        with pytest.raises(SessionLockedError, match="expired"):
            session.dek
    assert key == bytearray(32)


def test_extend_pushes_expiry(session):
    with patch("pagevault.security.session.time.time", return_value=1000.0):
        session.unlock_with_key(bytearray(b"k" * 32), slot_id=0)
        session.extend(100)
    with patch("pagevault.security.session.time.time", return_value=1150.0):
        assert session.is_unlocked


def test_extend_requires_unlock(session):
    with pytest.raises(SessionLockedError):
        session.extend(10)


# ==============================================================================
# Tests: verify_fresh
# ==============================================================================

def test_verify_fresh_accepts_recent_unlock(session, envelope):
    session.unlock_with_key(bytearray(b"k" * 32), slot_id=0)
    session.verify_fresh(envelope, max_age=300)


def test_verify_fresh_rejects_locked_session(session, envelope):
    with pytest.raises(InvariantViolation):
        session.verify_fresh(envelope, max_age=300)


def test_verify_fresh_rejects_other_archive(session, envelope):
    session.unlock_with_key(bytearray(b"k" * 32), slot_id=0)
    other = ExportEnvelope(
        export_id=b"F" * 16,
        base_nonce=envelope.base_nonce,
        kdf_params=envelope.kdf_params,
        compression=envelope.compression,
        chunk_size=envelope.chunk_size,
        chunk_count=envelope.chunk_count,
        key_slots=envelope.key_slots,
    )
    with pytest.raises(InvariantViolation, match="different archive"):
        session.verify_fresh(other, max_age=300)


def test_verify_fresh_rejects_old_unlock(session, envelope):
    with patch("pagevault.security.session.time.time", return_value=1000.0):
        session.unlock_with_key(bytearray(b"k" * 32), slot_id=0)
    with patch("pagevault.security.session.time.time", return_value=1030.0):
        with pytest.raises(InvariantViolation, match="too old"):
            session.verify_fresh(envelope, max_age=20)


def test_verify_fresh_rejects_revoked_unlocking_slot(session, envelope):
    session.unlock_with_key(bytearray(b"k" * 32), slot_id=1)
    revoked = envelope.with_slots(envelope.key_slots[:1])
    with pytest.raises(InvariantViolation, match="no longer exists"):
        session.verify_fresh(revoked, max_age=300)
