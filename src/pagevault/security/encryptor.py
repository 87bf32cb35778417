"""Archive producer: DEK generation, chunked AEAD and per-credential key slots.

Every export draws a fresh ``export_id``, DEK and base nonce, and every slot
a fresh salt and nonce, so reusing a password across exports never repeats
a key/nonce pair. Nothing is emitted unless the whole export succeeds:
:func:`export_archive` builds the archive in a staging directory and only
renames it into place at the end.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, List, Optional, Sequence, Union

from pagevault.core.codec import compress_blocks, compress_bytes, iter_chunks, read_blocks
from pagevault.core.exceptions import ConfigurationError
from pagevault.core.models import (
    DEFAULT_CHUNK_SIZE,
    Compression,
    Credential,
    ExportEnvelope,
    validate_chunk_size,
)
from pagevault.core.storage import ArchiveStore

from .crypto import (
    MAX_INDEX,
    encrypt_chunk,
    generate_base_nonce,
    generate_dek,
    generate_export_id,
    zeroize,
)
from .kdf import KdfParams
from .keywrap import check_secret, seal_slot

logger = logging.getLogger(__name__)

ChunkEmitter = Callable[[int, bytes], None]


@dataclass
class EncryptedExport:
    envelope: ExportEnvelope
    chunks: List[bytes]


def encrypt_chunks(
    dek,
    base_nonce: bytes,
    export_id: bytes,
    chunks: Iterable[bytes],
    emit: ChunkEmitter,
    workers: int = 1,
) -> int:
    """Encrypt ``chunks`` in index order and hand each result to ``emit``.

    With ``workers > 1`` up to ``workers`` chunks are encrypted concurrently;
    ``emit`` is still called strictly in index order. Returns the chunk count.
    """
    count = 0
    if workers <= 1:
        for index, plaintext in enumerate(chunks):
            _check_index(index)
            emit(index, encrypt_chunk(dek, base_nonce, export_id, index, plaintext))
            count += 1
        return count

    with ThreadPoolExecutor(max_workers=workers) as pool:
        batch = []
        for index, plaintext in enumerate(chunks):
            _check_index(index)
            batch.append((index, pool.submit(encrypt_chunk, dek, base_nonce, export_id, index, plaintext)))
            if len(batch) >= workers:
                for i, fut in batch:
                    emit(i, fut.result())
                count += len(batch)
                batch = []
        for i, fut in batch:
            emit(i, fut.result())
        count += len(batch)
    return count


def _check_index(index: int) -> None:
    if index > MAX_INDEX:
        raise ConfigurationError("payload has too many chunks for a 32-bit chunk counter")


class EnvelopeEncryptor:
    """
    Encrypts a compressed payload under a fresh DEK and seals one key slot
    per credential.

    Construction validates the chunk size and KDF parameters, so bad
    configuration is rejected before any cryptographic work starts.
    """

    def __init__(
        self,
        kdf_params: Optional[KdfParams] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        compression: Compression = Compression.DEFLATE,
        workers: int = 1,
    ):
        self.kdf_params = kdf_params if kdf_params is not None else KdfParams()
        self.chunk_size = validate_chunk_size(chunk_size)
        self.compression = Compression(compression)
        if workers < 1:
            raise ConfigurationError("workers must be at least 1")
        self.workers = workers

    def _check_credentials(self, credentials: Sequence[Credential]) -> None:
        if not credentials:
            raise ConfigurationError("at least one credential is required")
        for credential in credentials:
            check_secret(credential.secret, credential.slot_type)

    def encrypt_stream(
        self,
        compressed_blocks: Iterable[bytes],
        credentials: Sequence[Credential],
        emit: ChunkEmitter,
    ) -> ExportEnvelope:
        """Encrypt an already-compressed block stream, emitting ciphertext chunks.

        Returns the envelope once every chunk has been emitted and every slot
        sealed. Any exception aborts the export; the DEK is wiped either way.
        """
        self._check_credentials(credentials)

        export_id = generate_export_id()
        dek = generate_dek()
        try:
            base_nonce = generate_base_nonce()
            chunk_count = encrypt_chunks(
                dek,
                base_nonce,
                export_id,
                iter_chunks(compressed_blocks, self.chunk_size),
                emit,
                workers=self.workers,
            )
            slots = [
                seal_slot(dek, export_id, slot_id, credential, self.kdf_params)
                for slot_id, credential in enumerate(credentials)
            ]
        finally:
            zeroize(dek)

        envelope = ExportEnvelope(
            export_id=export_id,
            base_nonce=base_nonce,
            kdf_params=self.kdf_params,
            compression=self.compression,
            chunk_size=self.chunk_size,
            chunk_count=chunk_count,
            key_slots=tuple(slots),
        )
        logger.info(
            "encrypted export %s: %d chunk(s), %d key slot(s)",
            envelope.export_id_hex, chunk_count, len(slots),
        )
        return envelope

    def encrypt(
        self,
        compressed_payload: Union[bytes, Iterable[bytes]],
        credentials: Sequence[Credential],
    ) -> EncryptedExport:
        """Encrypt a compressed payload held in memory."""
        if isinstance(compressed_payload, (bytes, bytearray, memoryview)):
            compressed_payload = [bytes(compressed_payload)]
        chunks: List[bytes] = []

        def collect(index: int, ciphertext: bytes) -> None:
            chunks.append(ciphertext)

        envelope = self.encrypt_stream(compressed_payload, credentials, collect)
        return EncryptedExport(envelope=envelope, chunks=chunks)

    def encrypt_plaintext(self, plaintext: bytes, credentials: Sequence[Credential]) -> EncryptedExport:
        """Compress with the configured codec, then encrypt."""
        return self.encrypt(compress_bytes(plaintext, self.compression), credentials)


def export_archive(
    source: Union[str, Path, BinaryIO],
    archive_dir: Union[str, Path],
    credentials: Sequence[Credential],
    encryptor: Optional[EnvelopeEncryptor] = None,
) -> ExportEnvelope:
    """Compress and encrypt ``source`` into a new archive directory.

    The archive is written into a staging directory beside ``archive_dir`` and
    moved into place only after the manifest is complete.
    """
    encryptor = encryptor or EnvelopeEncryptor()
    target = ArchiveStore(archive_dir)
    if target.root.exists() and any(target.root.iterdir()):
        raise ConfigurationError(f"archive directory {target.root} is not empty")

    with target.staging("export") as staged:
        if isinstance(source, (str, Path)):
            with open(Path(source).expanduser(), "rb") as f:
                envelope = _export_into(encryptor, f, staged, credentials)
        else:
            envelope = _export_into(encryptor, source, staged, credentials)
        staged.save_envelope(envelope)
        target.promote(staged)
    return envelope


def _export_into(encryptor: EnvelopeEncryptor, fileobj: BinaryIO, staged: ArchiveStore, credentials) -> ExportEnvelope:
    blocks = compress_blocks(read_blocks(fileobj), encryptor.compression)
    return encryptor.encrypt_stream(blocks, credentials, staged.write_chunk)
