"""Unit tests for the background crypto worker protocol."""

import os
from unittest.mock import patch

import pytest

from pagevault.core.models import Compression, Credential
from pagevault.core.sink import MemorySink
from pagevault.security.encryptor import EnvelopeEncryptor
from pagevault.security.worker import (
    Cancel,
    ClearKeys,
    CryptoWorker,
    DecryptArchive,
    DecryptFailed,
    DecryptSucceeded,
    KeysCleared,
    Progress,
    UnlockFailed,
    UnlockPassword,
    UnlockRecovery,
    UnlockSucceeded,
)

RECOVERY = os.urandom(32)
PLAINTEXT = os.urandom(4000)
TIMEOUT = 60


@pytest.fixture(scope="module")
def export():
    enc = EnvelopeEncryptor(chunk_size=1500, compression=Compression.NONE)
    return enc.encrypt(PLAINTEXT, [Credential.password("owner", "p1"), Credential.recovery("r", RECOVERY)])


@pytest.fixture
def worker():
    w = CryptoWorker()
    w.start()
    yield w
    w.stop(timeout=TIMEOUT)


def _run(worker, request):
    rid = worker.submit(request)
    responses = list(worker.responses_for(rid, timeout=TIMEOUT))
    assert all(r.request_id == rid for r in responses)
    return responses


def test_request_ids_are_unique():
    assert ClearKeys().request_id != ClearKeys().request_id


def test_unlock_then_decrypt(worker, export):
    responses = _run(worker, UnlockPassword(envelope=export.envelope, password="p1"))
    assert isinstance(responses[-1], UnlockSucceeded)
    assert responses[-1].slot_id == 0
    assert any(isinstance(r, Progress) for r in responses)
    assert worker.is_unlocked

    sink = MemorySink()
    responses = _run(worker, DecryptArchive(fetch=lambda i: export.chunks[i], sink=sink))
    assert isinstance(responses[-1], DecryptSucceeded)
    assert responses[-1].size == len(PLAINTEXT)
    assert sink.getvalue() == PLAINTEXT


def test_unlock_with_recovery(worker, export):
    responses = _run(worker, UnlockRecovery(envelope=export.envelope, secret=RECOVERY))
    assert isinstance(responses[-1], UnlockSucceeded)
    assert responses[-1].slot_id == 1


def test_wrong_password_reports_failure(worker, export):
    responses = _run(worker, UnlockPassword(envelope=export.envelope, password="nope"))
    assert isinstance(responses[-1], UnlockFailed)
    assert "unable to unlock" in responses[-1].error
    assert not worker.is_unlocked


def test_decrypt_without_unlock_fails(worker, export):
    responses = _run(worker, DecryptArchive(fetch=lambda i: export.chunks[i], sink=MemorySink()))
    assert isinstance(responses[-1], DecryptFailed)
    assert "locked" in responses[-1].error


def test_tampered_decrypt_fails_and_drops_session(worker, export):
    _run(worker, UnlockPassword(envelope=export.envelope, password="p1"))
    chunks = list(export.chunks)
    chunks[0] = chunks[0][:-1] + bytes([chunks[0][-1] ^ 1])
    sink = MemorySink()
    responses = _run(worker, DecryptArchive(fetch=lambda i: chunks[i], sink=sink))
    assert isinstance(responses[-1], DecryptFailed)
    assert sink.aborted
    assert not worker.is_unlocked


def test_fetch_error_reports_failure(worker, export):
    _run(worker, UnlockPassword(envelope=export.envelope, password="p1"))

    def broken(i):
        raise OSError("gone")

    responses = _run(worker, DecryptArchive(fetch=broken, sink=MemorySink()))
    assert isinstance(responses[-1], DecryptFailed)
    assert responses[-1].error == "OSError"


def test_clear_keys(worker, export):
    _run(worker, UnlockPassword(envelope=export.envelope, password="p1"))
    responses = _run(worker, ClearKeys())
    assert isinstance(responses[-1], KeysCleared)
    assert not worker.is_unlocked


def test_cancel_returns_its_id_without_queueing(worker):
    request = Cancel()
    assert worker.submit(request) == request.request_id
    assert worker.requests.empty()


def test_responses_never_carry_key_material(worker, export):
    responses = _run(worker, UnlockPassword(envelope=export.envelope, password="p1"))
    for response in responses:
        for value in vars(response).values():
            assert not isinstance(value, (bytes, bytearray))


def test_unexpected_unlock_error_is_reported_and_worker_survives(worker, export):
    with patch("pagevault.security.worker.unlock", side_effect=MemoryError()):
        responses = _run(worker, UnlockPassword(envelope=export.envelope, password="p1"))
    assert isinstance(responses[-1], UnlockFailed)
    assert responses[-1].error == "MemoryError"
    assert not worker.is_unlocked
    assert isinstance(_run(worker, ClearKeys())[-1], KeysCleared)


def test_handler_crash_does_not_stop_the_loop(worker, export):
    with patch.object(worker, "_handle", side_effect=RuntimeError("boom")):
        responses = _run(worker, DecryptArchive(fetch=lambda i: export.chunks[i], sink=MemorySink()))
    assert isinstance(responses[-1], DecryptFailed)
    assert responses[-1].error == "RuntimeError"
    responses = _run(worker, UnlockPassword(envelope=export.envelope, password="p1"))
    assert isinstance(responses[-1], UnlockSucceeded)
