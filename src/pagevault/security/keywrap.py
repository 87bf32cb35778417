"""Sealing and opening of key slots.

A slot binds one credential to the archive DEK: the credential and a fresh
per-slot salt yield a KEK (Argon2id for passwords, HKDF-SHA256 for recovery
secrets), and the KEK wraps the DEK with AES-256-GCM under the slot AAD.
Every KEK is wiped as soon as the single wrap/unwrap it exists for is done.
"""
from typing import Optional

from pagevault.core.exceptions import ConfigurationError
from pagevault.core.models import Credential, KeySlot, SlotType

from .crypto import NONCE_LEN, UnwrapFailed, random_bytes, unwrap_dek, wrap_dek, zeroize
from .kdf import (
    MIN_SECRET_MATERIAL_LEN,
    KdfParams,
    derive_kek,
    derive_kek_from_secret_material,
    generate_salt,
)


def normalize_secret(secret) -> bytes:
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    secret = bytes(secret)
    if not secret:
        raise ConfigurationError("secret must not be empty")
    return secret


def can_open(slot_type: SlotType, secret: bytes) -> bool:
    """False when ``secret`` could never have sealed a slot of ``slot_type``."""
    return slot_type is not SlotType.RECOVERY or len(secret) >= MIN_SECRET_MATERIAL_LEN


def check_secret(secret, slot_type: SlotType) -> bytes:
    """Normalize a secret and reject ones unusable for sealing a ``slot_type`` slot."""
    secret = normalize_secret(secret)
    if not can_open(slot_type, secret):
        raise ConfigurationError(
            f"recovery secrets must be at least {MIN_SECRET_MATERIAL_LEN} bytes"
        )
    return secret


def derive_slot_kek(slot_type: SlotType, secret: bytes, salt: bytes, params: KdfParams) -> bytearray:
    if slot_type is SlotType.PASSWORD:
        return bytearray(derive_kek(secret, salt, params))
    return bytearray(derive_kek_from_secret_material(secret, salt))


def seal_slot(
    dek,
    export_id: bytes,
    slot_id: int,
    credential: Credential,
    params: KdfParams,
    argon2_params: Optional[KdfParams] = None,
) -> KeySlot:
    """Wrap ``dek`` for ``credential``.

    ``argon2_params`` overrides the envelope defaults ``params`` for this
    slot only and is recorded on it.
    """
    secret = check_secret(credential.secret, credential.slot_type)
    if argon2_params is not None and credential.slot_type is not SlotType.PASSWORD:
        raise ConfigurationError("Argon2 parameters only apply to password slots")
    salt = generate_salt()
    nonce = random_bytes(NONCE_LEN)
    kek = derive_slot_kek(credential.slot_type, secret, salt, argon2_params or params)
    try:
        wrapped = wrap_dek(kek, nonce, dek, export_id, slot_id)
    finally:
        zeroize(kek)
    return KeySlot(
        id=slot_id,
        label=credential.label,
        slot_type=credential.slot_type,
        salt=salt,
        nonce=nonce,
        wrapped_dek=wrapped,
        argon2_params=argon2_params,
    )


def open_slot(slot: KeySlot, secret: bytes, export_id: bytes, params: KdfParams) -> Optional[bytearray]:
    """Return the unwrapped DEK, or None when the tag does not verify."""
    kek = derive_slot_kek(slot.slot_type, secret, slot.salt, slot.kdf_params_for(params))
    try:
        return unwrap_dek(kek, slot.nonce, slot.wrapped_dek, export_id, slot.id)
    except UnwrapFailed:
        return None
    finally:
        zeroize(kek)
