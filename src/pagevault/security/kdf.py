import base64
import binascii

from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from pagevault.core.exceptions import ConfigurationError
from pagevault.core.models import KEY_LEN, SALT_LEN, KdfParams

from .crypto import random_bytes

# Recovery secrets must carry at least 128 bits of entropy.
MIN_SECRET_MATERIAL_LEN = 16
RECOVERY_SECRET_LEN = 32
RECOVERY_KEK_INFO = b"pagevault-kek-v2"


def generate_salt(length: int = SALT_LEN) -> bytes:
    """Return a cryptographically secure random salt."""
    return random_bytes(length)


def derive_kek(password, salt: bytes, params: KdfParams) -> bytes:
    """
    Derive a key-encryption key from a human password using Argon2id.
    Identical inputs always yield the identical 32-byte key.
    """
    if isinstance(password, str):
        password = password.encode("utf-8")

    return hash_secret_raw(
        secret=bytes(password),
        salt=salt,
        time_cost=params.iterations,
        memory_cost=params.memory_kb,
        parallelism=params.parallelism,
        hash_len=KEY_LEN,
        type=Type.ID,
    )


def derive_kek_from_secret_material(secret: bytes, salt: bytes, info: bytes = RECOVERY_KEK_INFO) -> bytes:
    """
    Derive a key-encryption key from high-entropy secret material using HKDF-SHA256.

    Only appropriate for recovery secrets; human passwords must go through
    :func:`derive_kek`.
    """
    if len(secret) < MIN_SECRET_MATERIAL_LEN:
        raise ConfigurationError(
            f"secret material must be at least {MIN_SECRET_MATERIAL_LEN} bytes"
        )
    hkdf = HKDF(algorithm=hashes.SHA256(), length=KEY_LEN, salt=salt, info=info)
    return hkdf.derive(bytes(secret))


def generate_recovery_secret() -> bytes:
    return random_bytes(RECOVERY_SECRET_LEN)


def encode_recovery_secret(secret: bytes) -> str:
    # Printable form handed to the user, unpadded URL-safe base64.
    return base64.urlsafe_b64encode(secret).decode("ascii").rstrip("=")


def decode_recovery_secret(text: str) -> bytes:
    """Turn user-entered recovery text back into secret bytes.

    Base64 (URL-safe or standard, padding optional) is tried first; text
    that is not valid base64 is used as its UTF-8 bytes.
    """
    cleaned = "".join(text.split())
    padded = cleaned + "=" * (-len(cleaned) % 4)
    try:
        altchars = b"-_" if ("-" in padded or "_" in padded) else None
        return base64.b64decode(padded.encode("ascii"), altchars=altchars, validate=True)
    except (binascii.Error, ValueError):
        return text.encode("utf-8")
