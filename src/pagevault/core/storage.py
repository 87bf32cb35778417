"""
On-disk archive layout

Structure Map for reference:
==============================
 - <archive_dir>/
      - config.json          (public manifest, ExportEnvelope)
      - payload/
          - chunk-00000.bin  (ciphertext || 16-byte tag)
          - chunk-00001.bin
          - ...
==============================
> Every chunk file is independently addressable; nothing is shared between
  chunk files beyond the manifest.
> The manifest is always replaced atomically (write temp file, then
  os.replace), so a reader that already loaded it keeps a consistent snapshot.
> Slot mutations on one archive are serialized with a per-path writer lock.
"""

import json
import logging
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from .exceptions import ArchiveCorruptError, ArchiveNotFoundError, ConfigurationError
from .models import ExportEnvelope, chunk_file_name

logger = logging.getLogger(__name__)

MANIFEST_NAME = "config.json"
PAYLOAD_DIR = "payload"

_writer_locks = {}
_writer_locks_lock = threading.Lock()


def get_writer_lock(path) -> threading.Lock:
    """Return the single-writer Lock for a given archive path."""
    key = str(Path(path).resolve())
    with _writer_locks_lock:
        lock = _writer_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _writer_locks[key] = lock
        return lock


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def delete_path(path) -> None:
    """Recursively delete a file or directory tree at *path*."""
    try:
        if os.path.isdir(path):
            shutil.rmtree(path)
        elif os.path.exists(path):
            os.remove(path)
    except FileNotFoundError:
        # already gone
        pass


class ArchiveStore:
    """Reads and writes one archive directory."""

    def __init__(self, root):
        self.root = Path(root).expanduser()

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_NAME

    @property
    def payload_root(self) -> Path:
        return self.root / PAYLOAD_DIR

    def chunk_path(self, index: int) -> Path:
        return self.root / chunk_file_name(index)

    def exists(self) -> bool:
        return self.manifest_path.is_file()

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------

    def load_envelope(self) -> ExportEnvelope:
        if not self.exists():
            raise ArchiveNotFoundError(f"no archive manifest at {self.manifest_path}")
        try:
            raw = self.manifest_path.read_bytes()
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ArchiveCorruptError("archive manifest is not valid JSON") from None
        return ExportEnvelope.from_dict(data)

    def save_envelope(self, envelope: ExportEnvelope) -> None:
        raw = json.dumps(envelope.to_dict(), indent=2).encode("utf-8")
        _write_atomic(self.manifest_path, raw)
        logger.debug("wrote manifest for export %s", envelope.export_id_hex)

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def read_chunk(self, index: int) -> bytes:
        path = self.chunk_path(index)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise ArchiveCorruptError(f"missing payload chunk {index}") from None

    def write_chunk(self, index: int, ciphertext: bytes) -> None:
        path = self.chunk_path(index)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(ciphertext)

    # ------------------------------------------------------------------
    # Writer lock and staging
    # ------------------------------------------------------------------

    @contextmanager
    def writer(self):
        """Hold the archive's single-writer lock for a read-modify-write."""
        lock = get_writer_lock(self.root)
        with lock:
            yield self

    @contextmanager
    def staging(self, suffix: str = "staging"):
        """Yield a sibling ArchiveStore that is deleted unless promoted."""
        self.root.parent.mkdir(parents=True, exist_ok=True)
        stage = Path(tempfile.mkdtemp(prefix=f".{self.root.name}.{suffix}.", dir=self.root.parent))
        try:
            yield ArchiveStore(stage)
        finally:
            delete_path(stage)

    def promote(self, staged: "ArchiveStore") -> None:
        """Move a fully written staged archive into place as this archive."""
        if self.root.exists() and any(self.root.iterdir()):
            raise ConfigurationError(f"refusing to overwrite non-empty directory {self.root}")
        if self.root.exists():
            self.root.rmdir()
        os.replace(staged.root, self.root)

    def swap_payload(self, staged: "ArchiveStore", envelope: ExportEnvelope) -> None:
        """Replace this archive's payload and manifest with the staged ones."""
        old_payload: Optional[Path] = None
        if self.payload_root.exists():
            old_payload = self.root / f".{PAYLOAD_DIR}.old"
            delete_path(old_payload)
            os.replace(self.payload_root, old_payload)
        try:
            os.replace(staged.payload_root, self.payload_root)
            try:
                self.save_envelope(envelope)
            except Exception:
                # hand the new chunks back to the stage; it is deleted with them
                os.replace(self.payload_root, staged.payload_root)
                raise
        except Exception:
            if old_payload is not None:
                os.replace(old_payload, self.payload_root)
            raise
        if old_payload is not None:
            delete_path(old_payload)
