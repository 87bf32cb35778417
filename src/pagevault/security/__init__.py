"""Security helpers: key derivation, envelope encryption and unlocking for pagevault.

This package provides:
- Argon2id / HKDF-SHA256 key-encryption-key derivation
- per-export DEK generation and chunked AES-256-GCM payload encryption
- key slots (one wrapped DEK per credential) and their management
- session-scoped unlocking and the streaming decrypt pipeline
"""

from .kdf import (
    generate_salt,
    derive_kek,
    derive_kek_from_secret_material,
    generate_recovery_secret,
    encode_recovery_secret,
    decode_recovery_secret,
)
from .crypto import chunk_nonce, chunk_aad, slot_aad
from .session import SessionState, UnlockSession
from .encryptor import EncryptedExport, EnvelopeEncryptor, export_archive
from .unlock import SlotAttempt, unlock, decrypt_chunk, stream_payload, decrypt_archive
from .slots import (
    list_slots,
    add_slot,
    revoke_slot,
    rotate,
    add_slot_to_archive,
    revoke_slot_in_archive,
    rotate_archive,
)

__all__ = [
    "generate_salt",
    "derive_kek",
    "derive_kek_from_secret_material",
    "generate_recovery_secret",
    "encode_recovery_secret",
    "decode_recovery_secret",
    "chunk_nonce",
    "chunk_aad",
    "slot_aad",
    "SessionState",
    "UnlockSession",
    "EncryptedExport",
    "EnvelopeEncryptor",
    "export_archive",
    "SlotAttempt",
    "unlock",
    "decrypt_chunk",
    "stream_payload",
    "decrypt_archive",
    "list_slots",
    "add_slot",
    "revoke_slot",
    "rotate",
    "add_slot_to_archive",
    "revoke_slot_in_archive",
    "rotate_archive",
]
