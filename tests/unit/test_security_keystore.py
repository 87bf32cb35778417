"""
Unit tests for the keystore module.
"""

import base64
from unittest.mock import MagicMock, patch

import pytest
from keyring.errors import KeyringError, NoKeyringError, PasswordDeleteError

from pagevault.core.exceptions import ConfigurationError
from pagevault.security import keystore

EXPORT_ID = b"\x01" * 16
ACCOUNT = "recovery:" + "01" * 16


# ==============================================================================
# Fixtures
# ==============================================================================

@pytest.fixture
def mock_keyring_lib():
    """Patches the keyring module within pagevault.security.keystore."""
    with patch("pagevault.security.keystore.keyring", autospec=True) as mock_lib:
        yield mock_lib


def _backend(name, priority=5):
    cls = type(name, (), {})
    backend = cls()
    backend.priority = priority
    return backend


# ==============================================================================
# Tests: assess_keyring_backend
# ==============================================================================

@pytest.mark.parametrize("name", ["PlaintextKeyring", "NullKeyring", "FailKeyring"])
def test_assess_backend_flags_insecure(mock_keyring_lib, name):
    mock_keyring_lib.get_keyring.return_value = _backend(name)
    secure, msg = keystore.assess_keyring_backend()
    assert secure is False
    assert name in msg


def test_assess_backend_flags_zero_priority(mock_keyring_lib):
    mock_keyring_lib.get_keyring.return_value = _backend("CustomBackend", priority=0)
    secure, msg = keystore.assess_keyring_backend()
    assert secure is False


def test_assess_backend_accepts_platform_backend(mock_keyring_lib):
    mock_keyring_lib.get_keyring.return_value = _backend("SecretServiceKeyring")
    secure, msg = keystore.assess_keyring_backend()
    assert secure is True
    assert "acceptable" in msg


def test_assess_backend_handles_lookup_failure(mock_keyring_lib):
    mock_keyring_lib.get_keyring.side_effect = RuntimeError("boom")
    secure, msg = keystore.assess_keyring_backend()
    assert secure is False
    assert "boom" in msg


# ==============================================================================
# Tests: save / load / delete
# ==============================================================================

def test_save_encodes_and_stores(mock_keyring_lib):
    with patch.object(keystore, "assess_keyring_backend", return_value=(True, "ok")):
        keystore.save_recovery_secret(EXPORT_ID, b"\x00\xffsecret")
    mock_keyring_lib.set_password.assert_called_once_with(
        "pagevault", ACCOUNT, base64.b64encode(b"\x00\xffsecret").decode("ascii")
    )


def test_save_refuses_insecure_backend(mock_keyring_lib):
    with patch.object(keystore, "assess_keyring_backend", return_value=(False, "insecure")):
        with pytest.raises(ConfigurationError, match="refusing"):
            keystore.save_recovery_secret(EXPORT_ID, b"secret")
    mock_keyring_lib.set_password.assert_not_called()


def test_save_force_skips_assessment(mock_keyring_lib):
    with patch.object(keystore, "assess_keyring_backend") as assess:
        keystore.save_recovery_secret(EXPORT_ID, b"secret", force=True)
    assess.assert_not_called()
    mock_keyring_lib.set_password.assert_called_once()


def test_save_backend_error_is_configuration_error(mock_keyring_lib):
    mock_keyring_lib.set_password.side_effect = KeyringError("locked")
    with pytest.raises(ConfigurationError):
        keystore.save_recovery_secret(EXPORT_ID, b"secret", force=True)


def test_load_decodes(mock_keyring_lib):
    mock_keyring_lib.get_password.return_value = base64.b64encode(b"stored").decode()
    assert keystore.load_recovery_secret(EXPORT_ID) == b"stored"
    mock_keyring_lib.get_password.assert_called_once_with("pagevault", ACCOUNT)


def test_load_missing_returns_none(mock_keyring_lib):
    mock_keyring_lib.get_password.return_value = None
    assert keystore.load_recovery_secret(EXPORT_ID) is None


def test_load_malformed_returns_none(mock_keyring_lib):
    mock_keyring_lib.get_password.return_value = "***"
    assert keystore.load_recovery_secret(EXPORT_ID) is None


def test_load_backend_error_returns_none(mock_keyring_lib):
    mock_keyring_lib.get_password.side_effect = KeyringError("locked")
    assert keystore.load_recovery_secret(EXPORT_ID) is None


def test_delete_ignores_missing_entry(mock_keyring_lib):
    mock_keyring_lib.delete_password.side_effect = PasswordDeleteError("not found")
    keystore.delete_recovery_secret(EXPORT_ID)
    mock_keyring_lib.delete_password.assert_called_once_with("pagevault", ACCOUNT)


def test_delete_without_backend_only_warns(mock_keyring_lib, caplog):
    mock_keyring_lib.delete_password.side_effect = NoKeyringError("No recommended backend was available")
    keystore.delete_recovery_secret(EXPORT_ID)
    assert "unavailable" in caplog.text
