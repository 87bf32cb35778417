"""
Destinations for the decrypted, decompressed payload stream.

Every sink is transactional: ``write`` stages data, ``complete`` publishes
it, ``abort`` throws away everything staged. A stream that fails part-way
therefore never leaves readable plaintext behind.

Two policies are provided for the final payload:

- :class:`MemorySink` (default): volatile, wiped when closed.
- :class:`DurableCacheSink`: opt-in on-disk copy keyed strictly by
  ``export_id`` and managed by :class:`ExportCache`. A cached copy is only
  ever served for an exact ``export_id`` match with an intact checksum.

:class:`FileSink` writes to a caller-chosen path for command-line use.
"""

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

from .exceptions import SessionLockedError
from .storage import _write_atomic, delete_path

logger = logging.getLogger(__name__)

CACHE_PAYLOAD_NAME = "payload.bin"
CACHE_META_NAME = "meta.json"
ORIGINS_NAME = "origins.json"
HASH_READ_SIZE = 64 * 1024


def _file_sha256(path: Path) -> str:
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(HASH_READ_SIZE), b""):
            sha256.update(block)
    return sha256.hexdigest()


class StreamingSink:
    """Base class; subclasses implement the three hooks."""

    def __init__(self):
        self.bytes_written = 0
        self.completed = False
        self.aborted = False

    def write(self, data: bytes) -> None:
        if self.completed or self.aborted:
            raise SessionLockedError("sink is closed")
        self._write(data)
        self.bytes_written += len(data)

    def complete(self) -> None:
        self._complete()
        self.completed = True

    def abort(self) -> None:
        if self.completed or self.aborted:
            return
        self.aborted = True
        self._abort()

    def _write(self, data: bytes) -> None:
        raise NotImplementedError

    def _complete(self) -> None:
        raise NotImplementedError

    def _abort(self) -> None:
        raise NotImplementedError


class MemorySink(StreamingSink):
    """Volatile sink; the payload lives only in this process's memory."""

    def __init__(self):
        super().__init__()
        self._buf = bytearray()

    def _write(self, data: bytes) -> None:
        self._buf += data

    def _complete(self) -> None:
        pass

    def _abort(self) -> None:
        self._wipe()

    def getvalue(self) -> bytes:
        if not self.completed:
            raise SessionLockedError("payload is not complete")
        return bytes(self._buf)

    def _wipe(self) -> None:
        for i in range(len(self._buf)):
            self._buf[i] = 0
        self._buf = bytearray()

    def close(self) -> None:
        self._wipe()


class FileSink(StreamingSink):
    """Writes to a temporary file next to ``path`` and renames it on completion."""

    def __init__(self, path):
        super().__init__()
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".part", dir=self.path.parent)
        self._tmp_path = Path(tmp_name)
        self._file = os.fdopen(fd, "wb")
        self._sha256 = hashlib.sha256()

    @property
    def sha256(self) -> str:
        return self._sha256.hexdigest()

    def _write(self, data: bytes) -> None:
        self._file.write(data)
        self._sha256.update(data)

    def _complete(self) -> None:
        self._file.flush()
        os.fsync(self._file.fileno())
        self._file.close()
        os.replace(self._tmp_path, self.path)

    def _abort(self) -> None:
        self._file.close()
        delete_path(self._tmp_path)


class DurableCacheSink(FileSink):
    """File sink whose published copy is registered in an :class:`ExportCache`."""

    def __init__(self, entry_dir: Path, export_id: bytes):
        entry_dir.mkdir(parents=True, exist_ok=True)
        super().__init__(entry_dir / CACHE_PAYLOAD_NAME)
        self.entry_dir = entry_dir
        self.export_id = export_id

    def _complete(self) -> None:
        super()._complete()
        meta = {
            "export_id": self.export_id.hex(),
            "size": self.bytes_written,
            "sha256": self.sha256,
        }
        _write_atomic(self.entry_dir / CACHE_META_NAME, json.dumps(meta).encode("utf-8"))
        logger.info("cached payload for export %s (%d bytes)", self.export_id.hex(), self.bytes_written)


class ExportCache:
    """
    Durable payload cache, keyed by ``export_id``.

    Layout::

        <root>/
            origins.json                 archive origin -> first-seen export_id
            <export_id hex>/
                payload.bin
                meta.json                export_id, size, sha256
    """

    def __init__(self, root):
        self.root = Path(root).expanduser()

    def entry_dir(self, export_id: bytes) -> Path:
        return self.root / bytes(export_id).hex()

    def lookup(self, export_id: bytes) -> Optional[Path]:
        """Return the cached payload path for an exact ``export_id`` match, else None."""
        entry = self.entry_dir(export_id)
        meta_path = entry / CACHE_META_NAME
        payload = entry / CACHE_PAYLOAD_NAME
        if not meta_path.is_file() or not payload.is_file():
            return None
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("discarding unreadable cache entry %s", entry.name)
            self.evict(export_id)
            return None
        if not isinstance(meta, dict) or meta.get("export_id") != bytes(export_id).hex():
            logger.warning("cache entry %s does not match its export id; discarding", entry.name)
            self.evict(export_id)
            return None
        if _file_sha256(payload) != meta.get("sha256"):
            logger.warning("cache entry %s failed its checksum; discarding", entry.name)
            self.evict(export_id)
            return None
        return payload

    def sink_for(self, export_id: bytes) -> DurableCacheSink:
        return DurableCacheSink(self.entry_dir(export_id), bytes(export_id))

    def evict(self, export_id: bytes) -> None:
        delete_path(self.entry_dir(export_id))

    # ------------------------------------------------------------------
    # Trust on first use of an archive origin
    # ------------------------------------------------------------------

    def _load_origins(self) -> Dict[str, str]:
        path = self.root / ORIGINS_NAME
        if not path.is_file():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def remember_origin(self, origin: str, export_id: bytes) -> Optional[str]:
        """Record ``export_id`` for ``origin``.

        Returns the previously recorded export id (hex) when the origin now
        presents a different archive; the stale cached payload is evicted.
        Returns None on first use or when nothing changed.
        """
        origins = self._load_origins()
        current = bytes(export_id).hex()
        previous = origins.get(origin)
        if previous == current:
            return None
        origins[origin] = current
        _write_atomic(self.root / ORIGINS_NAME, json.dumps(origins, indent=2).encode("utf-8"))
        if previous is None:
            return None
        logger.warning(
            "archive at %s changed identity (%s -> %s); dropping cached copy",
            origin, previous, current,
        )
        try:
            self.evict(bytes.fromhex(previous))
        except (TypeError, ValueError):
            logger.warning("ignoring malformed origin record for %s", origin)
        return previous
