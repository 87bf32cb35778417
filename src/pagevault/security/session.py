"""Session object that exclusively owns an unwrapped archive DEK.

A session is created by a successful unlock and holds the DEK in a
bytearray until it is locked. Locking zeroizes the key. Sessions also
lock on expiry (checked whenever the key is requested), on context-manager
exit, and on any failure reported through :meth:`UnlockSession.abort`.
There is no module-level default session: each archive unlock gets its own.
"""
from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Optional

from pagevault.core.exceptions import InvariantViolation, SessionLockedError
from pagevault.core.models import ExportEnvelope

from .crypto import zeroize

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


class SessionState(Enum):
    AWAITING_SECRET = "awaiting_secret"
    DERIVING_KEY = "deriving_key"
    UNWRAPPING_DEK = "unwrapping_dek"
    UNLOCKED = "unlocked"
    SLOT_EXHAUSTED = "slot_exhausted"
    STREAMING_CHUNKS = "streaming_chunks"
    COMPLETE = "complete"
    ABORTED = "aborted"
    LOCKED = "locked"


class UnlockSession:
    def __init__(self, envelope: ExportEnvelope, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.envelope = envelope
        self.export_id = envelope.export_id
        self.ttl_seconds = ttl_seconds
        self.state = SessionState.AWAITING_SECRET
        self.slot_id: Optional[int] = None
        self._dek: Optional[bytearray] = None
        self._unlocked_at: Optional[float] = None
        self._expires_at: Optional[float] = None

    def __repr__(self):
        return f"UnlockSession(export_id={self.envelope.export_id_hex!r}, state={self.state.value!r})"

    def __enter__(self) -> "UnlockSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.lock()

    # ------------------------------------------------------------------
    # Key lifecycle
    # ------------------------------------------------------------------

    def unlock_with_key(self, dek: bytearray, slot_id: int) -> None:
        """Take ownership of an unwrapped DEK.

        Args:
            dek: the unwrapped key; the session wipes this buffer on lock
            slot_id: id of the slot that produced it
        """
        if len(dek) != 32:
            raise ValueError("DEK must be 32 bytes")
        self.lock()
        now = time.time()
        self._dek = dek
        self.slot_id = slot_id
        self._unlocked_at = now
        self._expires_at = now + float(self.ttl_seconds)
        self.state = SessionState.UNLOCKED

    @property
    def is_unlocked(self) -> bool:
        return self._dek is not None and not self._expired()

    def _expired(self) -> bool:
        return self._expires_at is not None and time.time() > self._expires_at

    @property
    def dek(self) -> bytearray:
        """Return the unlocked DEK or raise if locked/expired."""
        if self._dek is None:
            raise SessionLockedError("Session is locked")
        if self._expired():
            # auto-lock on expiry
            self.lock()
            raise SessionLockedError("Session expired and was locked")
        return self._dek

    def extend(self, extra_seconds: int) -> None:
        """Extend session TTL by extra_seconds if unlocked."""
        if self._dek is None:
            raise SessionLockedError("Session is locked")
        self._expires_at = (self._expires_at or time.time()) + float(extra_seconds)

    def verify_fresh(self, envelope: ExportEnvelope, max_age: float) -> None:
        """Require a live unlock of this very archive, at most ``max_age`` seconds old.

        Slot mutations call this right before touching the envelope so that a
        stale session, or one unlocked through a since-revoked slot, cannot
        be used to add credentials.
        """
        if not self.is_unlocked:
            raise InvariantViolation("slot changes require an unlocked session")
        if envelope.export_id != self.export_id:
            raise InvariantViolation("session belongs to a different archive")
        if self._unlocked_at is None or time.time() - self._unlocked_at > max_age:
            raise InvariantViolation("session unlock is too old; unlock again before changing slots")
        if self.slot_id is None or not envelope.has_slot(self.slot_id):
            raise InvariantViolation("the slot this session was unlocked with no longer exists")

    def lock(self) -> None:
        """Zeroize the DEK and lock the session."""
        try:
            zeroize(self._dek)
        finally:
            had_key = self._dek is not None
            self._dek = None
            self._unlocked_at = None
            self._expires_at = None
            if self.state not in (SessionState.ABORTED, SessionState.SLOT_EXHAUSTED):
                self.state = SessionState.LOCKED
            if had_key:
                logger.debug("session for export %s locked", self.envelope.export_id_hex)

    def abort(self) -> None:
        """Record a failure and discard the key."""
        self.state = SessionState.ABORTED
        self.lock()
