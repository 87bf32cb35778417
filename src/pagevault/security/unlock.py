"""Archive consumer: slot unlocking and the streaming decrypt pipeline.

Unlocking walks the slots of the claimed credential type. Each attempt is a
:class:`SlotAttempt` value; a tag mismatch is just ``ok=False`` and the loop
moves on. All failed attempts fold into one :class:`AuthenticationFailed`
that says nothing about individual slots.

Streaming runs a fetch thread ahead of the decryptor through a bounded
queue (``prefetch`` chunks at most), decrypts strictly in index order, and
feeds one continuous decompressor. Any failure aborts the sink and locks
the session.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from pagevault.core.codec import StreamDecompressor
from pagevault.core.exceptions import (
    AuthenticationFailed,
    ChunkIntegrityError,
    OperationCancelled,
)
from pagevault.core.models import ExportEnvelope, SlotType
from pagevault.core.sink import StreamingSink

from .crypto import decrypt_chunk_raw
from .keywrap import can_open, normalize_secret, open_slot
from .session import DEFAULT_TTL_SECONDS, SessionState, UnlockSession

logger = logging.getLogger(__name__)

ChunkFetcher = Callable[[int], bytes]
ProgressCallback = Callable[[str, int], None]

DEFAULT_PREFETCH = 2
_QUEUE_POLL_SECONDS = 0.1


@dataclass(frozen=True)
class SlotAttempt:
    slot_id: int
    ok: bool


def _noop_progress(phase: str, percent: int) -> None:
    pass


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("operation cancelled")


def unlock(
    envelope: ExportEnvelope,
    secret,
    slot_type: SlotType = SlotType.PASSWORD,
    cancel: Optional[threading.Event] = None,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    progress: Optional[ProgressCallback] = None,
) -> UnlockSession:
    """Try every slot of ``slot_type`` and return an unlocked session.

    Raises:
        AuthenticationFailed: no slot accepted the secret.
        OperationCancelled: ``cancel`` was set between two slot attempts.
        ConfigurationError: the secret is empty.
    """
    progress = progress or _noop_progress
    secret = normalize_secret(secret)
    session = UnlockSession(envelope, ttl_seconds=ttl_seconds)
    candidates = envelope.slots_of_type(slot_type)
    attempts: List[SlotAttempt] = []

    for slot in candidates:
        _check_cancel(cancel)
        if not can_open(slot.slot_type, secret):
            attempts.append(SlotAttempt(slot.id, False))
            continue
        session.state = SessionState.DERIVING_KEY
        progress("Deriving key...", 10)
        dek = open_slot(slot, secret, envelope.export_id, envelope.kdf_params)
        session.state = SessionState.UNWRAPPING_DEK
        progress("Unwrapping key...", 80)
        attempts.append(SlotAttempt(slot.id, dek is not None))
        if dek is not None:
            session.unlock_with_key(dek, slot.id)
            logger.info("unlocked export %s", envelope.export_id_hex)
            return session

    session.state = SessionState.SLOT_EXHAUSTED
    logger.info(
        "unlock of export %s failed after %d %s slot attempt(s)",
        envelope.export_id_hex, len(attempts), slot_type.value,
    )
    raise AuthenticationFailed("unable to unlock archive with the supplied secret")


def decrypt_chunk(dek, envelope: ExportEnvelope, index: int, ciphertext: bytes) -> bytes:
    """Authenticate and decrypt chunk ``index`` of ``envelope``."""
    if not 0 <= index < envelope.chunk_count:
        raise ChunkIntegrityError(index, "chunk index outside the archive")
    return decrypt_chunk_raw(dek, envelope.base_nonce, envelope.export_id, index, ciphertext)


class _Fetched:
    __slots__ = ("index", "data", "error")

    def __init__(self, index: int, data: Optional[bytes] = None, error: Optional[BaseException] = None):
        self.index = index
        self.data = data
        self.error = error


def _put(q: "queue.Queue[_Fetched]", item: _Fetched, stop: threading.Event) -> bool:
    while not stop.is_set():
        try:
            q.put(item, timeout=_QUEUE_POLL_SECONDS)
            return True
        except queue.Full:
            continue
    return False


def _get(q: "queue.Queue[_Fetched]", cancel: Optional[threading.Event]) -> _Fetched:
    while True:
        _check_cancel(cancel)
        try:
            return q.get(timeout=_QUEUE_POLL_SECONDS)
        except queue.Empty:
            continue


def _fetch_loop(fetch: ChunkFetcher, count: int, q: "queue.Queue[_Fetched]", stop: threading.Event) -> None:
    index = 0
    try:
        for index in range(count):
            if stop.is_set():
                return
            data = fetch(index)
            if not _put(q, _Fetched(index, data), stop):
                return
    except Exception as exc:
        _put(q, _Fetched(index, error=exc), stop)


def stream_payload(
    session: UnlockSession,
    fetch: ChunkFetcher,
    sink: StreamingSink,
    cancel: Optional[threading.Event] = None,
    prefetch: int = DEFAULT_PREFETCH,
    progress: Optional[ProgressCallback] = None,
) -> int:
    """Fetch, decrypt and decompress every chunk into ``sink``.

    Returns the number of plaintext bytes written. On any failure the sink
    is aborted, the session is aborted (DEK wiped) and the error re-raised.
    """
    progress = progress or _noop_progress
    envelope = session.envelope
    count = envelope.chunk_count
    q: "queue.Queue[_Fetched]" = queue.Queue(maxsize=max(1, prefetch))
    stop = threading.Event()
    fetcher = threading.Thread(
        target=_fetch_loop, args=(fetch, count, q, stop), name="pagevault-fetch", daemon=True
    )

    try:
        dek = session.dek
        session.state = SessionState.STREAMING_CHUNKS
        decompressor = StreamDecompressor(envelope.compression, max_output=envelope.chunk_size)
        fetcher.start()
        progress("Decrypting...", 0)
        for expected in range(count):
            item = _get(q, cancel)
            if item.error is not None:
                raise item.error
            if item.index != expected:
                raise ChunkIntegrityError(expected, "chunk arrived out of order")
            plaintext = decrypt_chunk(dek, envelope, expected, item.data)
            for piece in decompressor.feed(plaintext):
                sink.write(piece)
            progress(f"Decrypting chunk {expected + 1}/{count}...", round((expected + 1) / count * 90))
        _check_cancel(cancel)
        tail = decompressor.finish()
        if tail:
            sink.write(tail)
        sink.complete()
    except BaseException:
        stop.set()
        sink.abort()
        session.abort()
        logger.warning("decrypt of export %s aborted", envelope.export_id_hex)
        raise
    finally:
        stop.set()
        if fetcher.is_alive():
            fetcher.join()

    session.state = SessionState.COMPLETE
    progress("Complete", 100)
    logger.info("decrypted export %s: %d bytes", envelope.export_id_hex, sink.bytes_written)
    return sink.bytes_written


def decrypt_archive(
    envelope: ExportEnvelope,
    fetch: ChunkFetcher,
    secret,
    sink: StreamingSink,
    slot_type: SlotType = SlotType.PASSWORD,
    cancel: Optional[threading.Event] = None,
    prefetch: int = DEFAULT_PREFETCH,
) -> int:
    """Unlock, stream into ``sink`` and lock again."""
    with unlock(envelope, secret, slot_type=slot_type, cancel=cancel) as session:
        return stream_payload(session, fetch, sink, cancel=cancel, prefetch=prefetch)
