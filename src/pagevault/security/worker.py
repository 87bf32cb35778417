"""Background crypto worker with a typed request/response protocol.

Key derivation takes seconds, so callers that must stay
responsive hand it to a :class:`CryptoWorker`. Requests and responses are
small dataclasses; every response carries the ``request_id`` of the
request it answers. The worker keeps at most one unlocked session and
never sends the DEK back over the channel.

Example::

    worker = CryptoWorker()
    worker.start()
    rid = worker.submit(UnlockPassword(envelope=env, password="p1"))
    for response in worker.responses_for(rid):
        ...
    worker.stop()
"""
from __future__ import annotations

import itertools
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

from pagevault.core.exceptions import (
    AuthenticationFailed,
    OperationCancelled,
    PageVaultError,
    SessionLockedError,
)
from pagevault.core.models import ExportEnvelope, SlotType
from pagevault.core.sink import StreamingSink

from .session import UnlockSession
from .unlock import ChunkFetcher, stream_payload, unlock

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


def _next_id() -> int:
    return next(_ids)


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------


@dataclass
class UnlockPassword:
    envelope: ExportEnvelope
    password: Union[str, bytes] = field(repr=False)
    request_id: int = field(default_factory=_next_id)


@dataclass
class UnlockRecovery:
    envelope: ExportEnvelope
    secret: bytes = field(repr=False)
    request_id: int = field(default_factory=_next_id)


@dataclass
class DecryptArchive:
    fetch: ChunkFetcher
    sink: StreamingSink
    request_id: int = field(default_factory=_next_id)


@dataclass
class ClearKeys:
    request_id: int = field(default_factory=_next_id)


@dataclass
class Cancel:
    """Handled on submit: stops the request in flight at its next safe point."""

    request_id: int = field(default_factory=_next_id)


@dataclass
class Shutdown:
    request_id: int = field(default_factory=_next_id)


Request = Union[UnlockPassword, UnlockRecovery, DecryptArchive, ClearKeys, Cancel, Shutdown]


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------


@dataclass
class Progress:
    request_id: int
    phase: str
    percent: int


@dataclass
class UnlockSucceeded:
    request_id: int
    slot_id: int


@dataclass
class UnlockFailed:
    request_id: int
    error: str


@dataclass
class DecryptSucceeded:
    request_id: int
    size: int


@dataclass
class DecryptFailed:
    request_id: int
    error: str


@dataclass
class KeysCleared:
    request_id: int


Response = Union[Progress, UnlockSucceeded, UnlockFailed, DecryptSucceeded, DecryptFailed, KeysCleared]
FINAL_RESPONSES = (UnlockSucceeded, UnlockFailed, DecryptSucceeded, DecryptFailed, KeysCleared)


def _failure_for(request: Request, exc: Exception) -> Response:
    rid = request.request_id
    if isinstance(request, DecryptArchive):
        return DecryptFailed(rid, exc.__class__.__name__)
    if isinstance(request, ClearKeys):
        return KeysCleared(rid)
    return UnlockFailed(rid, exc.__class__.__name__)


class CryptoWorker:
    """Runs unlock/decrypt requests one at a time on a background thread."""

    def __init__(self):
        self.requests: "queue.Queue[Request]" = queue.Queue()
        self.responses: "queue.Queue[Response]" = queue.Queue()
        self._cancel = threading.Event()
        self._session: Optional[UnlockSession] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="pagevault-crypto", daemon=True)
        self._thread.start()

    def submit(self, request: Request) -> int:
        if isinstance(request, Cancel):
            self._cancel.set()
            return request.request_id
        self.requests.put(request)
        return request.request_id

    def cancel(self) -> None:
        """Ask the running request to stop at its next safe point."""
        self._cancel.set()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._cancel.set()
        self.requests.put(Shutdown())
        if self._thread is not None:
            self._thread.join(timeout)

    def responses_for(self, request_id: int, timeout: Optional[float] = None) -> Iterator[Response]:
        """Yield responses for one request until its final response."""
        while True:
            response = self.responses.get(timeout=timeout)
            if response.request_id != request_id:
                logger.debug("dropping response for request %d", response.request_id)
                continue
            yield response
            if isinstance(response, FINAL_RESPONSES):
                return

    @property
    def is_unlocked(self) -> bool:
        return self._session is not None and self._session.is_unlocked

    # ------------------------------------------------------------------
    # Worker thread
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            request = self.requests.get()
            if isinstance(request, Shutdown):
                self._clear()
                return
            try:
                self._handle(request)
            except Exception as exc:
                logger.exception("crypto worker request %d failed", request.request_id)
                self._clear()
                self.responses.put(_failure_for(request, exc))

    def _progress(self, request_id: int):
        def report(phase: str, percent: int) -> None:
            self.responses.put(Progress(request_id, phase, percent))
        return report

    def _handle(self, request: Request) -> None:
        rid = request.request_id
        self._cancel.clear()
        if isinstance(request, (UnlockPassword, UnlockRecovery)):
            self._clear()
            if isinstance(request, UnlockPassword):
                secret, slot_type = request.password, SlotType.PASSWORD
            else:
                secret, slot_type = request.secret, SlotType.RECOVERY
            try:
                self._session = unlock(
                    request.envelope, secret, slot_type=slot_type,
                    cancel=self._cancel, progress=self._progress(rid),
                )
            except (AuthenticationFailed, OperationCancelled) as exc:
                self.responses.put(UnlockFailed(rid, str(exc)))
                return
            except PageVaultError as exc:
                self.responses.put(UnlockFailed(rid, exc.__class__.__name__))
                return
            except Exception as exc:
                # KDF resource failures (MemoryError, argon2 HashingError) and bad secret types
                logger.warning("unlock request %d failed: %s", rid, exc.__class__.__name__)
                self.responses.put(UnlockFailed(rid, exc.__class__.__name__))
                return
            self.responses.put(UnlockSucceeded(rid, self._session.slot_id))

        elif isinstance(request, DecryptArchive):
            session = self._session
            if session is None or not session.is_unlocked:
                self.responses.put(DecryptFailed(rid, str(SessionLockedError("Session is locked"))))
                return
            try:
                size = stream_payload(
                    session, request.fetch, request.sink,
                    cancel=self._cancel, progress=self._progress(rid),
                )
            except PageVaultError as exc:
                self._session = None
                self.responses.put(DecryptFailed(rid, str(exc)))
                return
            except Exception as exc:
                # fetch failures from caller-supplied sources (I/O errors and the like)
                self._session = None
                logger.warning("decrypt request %d failed: %s", rid, exc.__class__.__name__)
                self.responses.put(DecryptFailed(rid, exc.__class__.__name__))
                return
            self.responses.put(DecryptSucceeded(rid, size))

        elif isinstance(request, ClearKeys):
            self._clear()
            self.responses.put(KeysCleared(rid))

    def _clear(self) -> None:
        if self._session is not None:
            self._session.lock()
            self._session = None
