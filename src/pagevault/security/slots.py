"""Key slot management: add, revoke and rotate credentials on an envelope.

``add_slot`` and ``revoke_slot`` only rewrite the manifest; the payload is
untouched. ``rotate`` is the one operation that re-encrypts every chunk,
under a brand-new DEK and base nonce, and is meant for suspected key
compromise.

The envelope functions are pure: they return a new :class:`ExportEnvelope`
and leave the caller's snapshot alone. The ``*_archive`` helpers do the
read-modify-write against an :class:`ArchiveStore` while holding its
single-writer lock.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pagevault.core.exceptions import ConfigurationError, InvariantViolation, LastSlotError
from pagevault.core.models import Credential, ExportEnvelope, KdfParams, KeySlot, SlotType
from pagevault.core.storage import ArchiveStore

from .crypto import encrypt_chunk, generate_base_nonce, generate_dek, zeroize
from .keywrap import check_secret, seal_slot
from .session import UnlockSession
from .unlock import ChunkFetcher, decrypt_chunk, unlock

logger = logging.getLogger(__name__)

# Slot changes need an unlock no older than this (seconds).
DEFAULT_MAX_SESSION_AGE = 300


def list_slots(envelope: ExportEnvelope) -> List[Dict]:
    return [slot.summary() for slot in envelope.key_slots]


def add_slot(
    envelope: ExportEnvelope,
    session: UnlockSession,
    credential: Credential,
    max_session_age: float = DEFAULT_MAX_SESSION_AGE,
    argon2_params: Optional[KdfParams] = None,
) -> Tuple[ExportEnvelope, KeySlot]:
    """Seal the session's DEK for ``credential`` and append the new slot.

    The DEK comes from ``session``, which must be a live, recent unlock of
    this archive; it cannot be re-derived from the new secret. A password
    slot may carry its own ``argon2_params`` instead of the envelope defaults.
    """
    check_secret(credential.secret, credential.slot_type)
    session.verify_fresh(envelope, max_session_age)
    slot = seal_slot(
        session.dek,
        envelope.export_id,
        envelope.next_slot_id(),
        credential,
        envelope.kdf_params,
        argon2_params=argon2_params,
    )
    updated = envelope.with_slots(envelope.key_slots + (slot,))
    logger.info("added %s slot %d to export %s", slot.slot_type.value, slot.id, envelope.export_id_hex)
    return updated, slot


def revoke_slot(envelope: ExportEnvelope, slot_id: int) -> ExportEnvelope:
    """Remove one slot. The last remaining slot can never be revoked."""
    envelope.get_slot(slot_id)
    if len(envelope.key_slots) <= 1:
        raise LastSlotError("cannot revoke the last remaining key slot")
    updated = envelope.with_slots(s for s in envelope.key_slots if s.id != slot_id)
    logger.info("revoked slot %d from export %s", slot_id, envelope.export_id_hex)
    return updated


def _rotate(
    envelope: ExportEnvelope,
    fetch: ChunkFetcher,
    emit: Callable[[int, bytes], None],
    old_secret,
    new_credentials: Sequence[Credential],
    old_slot_type: SlotType,
    cancel: Optional[threading.Event],
    argon2_params: Optional[KdfParams] = None,
) -> ExportEnvelope:
    if not new_credentials:
        raise ConfigurationError("at least one credential is required")
    for credential in new_credentials:
        check_secret(credential.secret, credential.slot_type)

    session = unlock(envelope, old_secret, slot_type=old_slot_type, cancel=cancel)
    new_dek = generate_dek()
    try:
        old_dek = session.dek
        base_nonce = generate_base_nonce()
        for index in range(envelope.chunk_count):
            plaintext = decrypt_chunk(old_dek, envelope, index, fetch(index))
            emit(index, encrypt_chunk(new_dek, base_nonce, envelope.export_id, index, plaintext))
        slots = [
            seal_slot(
                new_dek,
                envelope.export_id,
                slot_id,
                credential,
                envelope.kdf_params,
                argon2_params=argon2_params if credential.slot_type is SlotType.PASSWORD else None,
            )
            for slot_id, credential in enumerate(new_credentials)
        ]
    finally:
        session.lock()
        zeroize(new_dek)

    rotated = ExportEnvelope(
        export_id=envelope.export_id,
        base_nonce=base_nonce,
        kdf_params=envelope.kdf_params,
        compression=envelope.compression,
        chunk_size=envelope.chunk_size,
        chunk_count=envelope.chunk_count,
        key_slots=tuple(slots),
    )
    logger.info(
        "rotated keys for export %s: %d chunk(s) re-encrypted, %d slot(s)",
        envelope.export_id_hex, envelope.chunk_count, len(slots),
    )
    return rotated


def rotate(
    envelope: ExportEnvelope,
    chunks: Sequence[bytes],
    old_secret,
    new_credentials: Sequence[Credential],
    old_slot_type: SlotType = SlotType.PASSWORD,
    cancel: Optional[threading.Event] = None,
    argon2_params: Optional[KdfParams] = None,
) -> Tuple[ExportEnvelope, List[bytes]]:
    """Replace the DEK, re-encrypt every chunk and re-wrap for ``new_credentials``.

    Every previous slot is dropped; only ``new_credentials`` can unlock the
    result. ``argon2_params``, when given, is recorded on each new password slot.
    """
    if len(chunks) != envelope.chunk_count:
        raise InvariantViolation("chunk list does not match the envelope's chunk count")
    out: List[bytes] = []
    rotated = _rotate(
        envelope,
        lambda i: chunks[i],
        lambda i, ct: out.append(ct),
        old_secret,
        new_credentials,
        old_slot_type,
        cancel,
        argon2_params,
    )
    return rotated, out


# ----------------------------------------------------------------------
# On-disk helpers
# ----------------------------------------------------------------------


def add_slot_to_archive(
    store: ArchiveStore,
    session: UnlockSession,
    credential: Credential,
    max_session_age: float = DEFAULT_MAX_SESSION_AGE,
    argon2_params: Optional[KdfParams] = None,
) -> Tuple[ExportEnvelope, KeySlot]:
    with store.writer():
        # re-read under the lock; the caller's snapshot may be stale
        current = store.load_envelope()
        updated, slot = add_slot(
            current, session, credential, max_session_age=max_session_age, argon2_params=argon2_params
        )
        store.save_envelope(updated)
    return updated, slot


def revoke_slot_in_archive(
    store: ArchiveStore,
    slot_id: int,
    session: Optional[UnlockSession] = None,
    max_session_age: float = DEFAULT_MAX_SESSION_AGE,
) -> ExportEnvelope:
    with store.writer():
        current = store.load_envelope()
        if session is not None:
            session.verify_fresh(current, max_session_age)
        updated = revoke_slot(current, slot_id)
        store.save_envelope(updated)
    return updated


def rotate_archive(
    store: ArchiveStore,
    old_secret,
    new_credentials: Sequence[Credential],
    old_slot_type: SlotType = SlotType.PASSWORD,
    cancel: Optional[threading.Event] = None,
    argon2_params: Optional[KdfParams] = None,
) -> ExportEnvelope:
    with store.writer():
        current = store.load_envelope()
        with store.staging("rotate") as staged:
            rotated = _rotate(
                current,
                store.read_chunk,
                staged.write_chunk,
                old_secret,
                new_credentials,
                old_slot_type,
                cancel,
                argon2_params,
            )
            store.swap_payload(staged, rotated)
    return rotated
