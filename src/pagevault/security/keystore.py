"""OS keystore integration using keyring for optional recovery-secret storage.

This module provides a tiny wrapper around `keyring` to store and retrieve
archive recovery secrets (base64-encoded) under the ``pagevault`` service,
one account per archive ``export_id``. Use this only for opt-in convenience
storage; do not assume keyring provides hardware-backed security on all
platforms. The archive DEK itself is never stored here.
"""
import base64
import binascii
import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from pagevault.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

SERVICE_NAME = "pagevault"


def _account(export_id: bytes) -> str:
    return f"recovery:{bytes(export_id).hex()}"


def assess_keyring_backend() -> tuple[bool, str]:
    """Return (is_secure, message) describing the current keyring backend.

    Heuristics are used because the `keyring` package exposes different backends
    across platforms.
    """
    try:
        backend = keyring.get_keyring()
    except Exception as e:
        return False, f"failed to get keyring backend: {e}"

    name = backend.__class__.__name__
    priority = getattr(backend, "priority", None)

    insecure_indicators = ("Plaintext", "Uncrypted", "Simple", "File", "Null", "Fail")
    if any(tok in name for tok in insecure_indicators):
        return False, f"insecure backend detected: {name}"

    if priority is not None and priority <= 0:
        return False, f"no suitable secure keyring backend available (priority={priority}, backend={name})"

    # treat known platform backends as acceptable
    if "Win" in name or "Keychain" in name or "SecretService" in name or "KWallet" in name:
        return True, f"backend looks acceptable: {name} (priority={priority})"

    return True, f"unknown backend '{name}', treat with caution (priority={priority})"


def save_recovery_secret(export_id: bytes, secret: bytes, force: bool = False) -> None:
    """Persist a recovery secret in the OS keystore.

    Refuses backends that look insecure unless ``force`` is set.
    """
    if not force:
        secure, msg = assess_keyring_backend()
        if not secure:
            raise ConfigurationError(
                f"refusing to store recovery secret in OS keystore: {msg}; "
                "pass force=True to override if you understand the risk"
            )
    encoded = base64.b64encode(bytes(secret)).decode("ascii")
    try:
        keyring.set_password(SERVICE_NAME, _account(export_id), encoded)
    except KeyringError as exc:
        raise ConfigurationError(f"OS keystore rejected the secret: {exc.__class__.__name__}") from None
    logger.info("stored recovery secret for export %s in OS keystore", bytes(export_id).hex())


def load_recovery_secret(export_id: bytes) -> Optional[bytes]:
    """Load a stored recovery secret; returns raw bytes or None."""
    try:
        encoded = keyring.get_password(SERVICE_NAME, _account(export_id))
    except KeyringError:
        logger.warning("OS keystore unavailable while loading recovery secret")
        return None
    if encoded is None:
        return None
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("ignoring malformed keystore entry for export %s", bytes(export_id).hex())
        return None


def delete_recovery_secret(export_id: bytes) -> None:
    """Remove a stored recovery secret, if any. Best effort: never raises."""
    try:
        keyring.delete_password(SERVICE_NAME, _account(export_id))
    except PasswordDeleteError:
        # nothing stored
        pass
    except KeyringError:
        logger.warning("OS keystore unavailable while deleting recovery secret")
