"""
Payload codec: raw-deflate compression and fixed-size chunking.

The compressed payload is one continuous deflate stream that is cut into
fixed-size chunks after compression, so chunk boundaries fall anywhere in
the stream and the consumer must feed chunks to a single decompressor in
index order.
"""

import zlib
from typing import BinaryIO, Iterable, Iterator

from .exceptions import ArchiveCorruptError
from .models import Compression, validate_chunk_size

READ_SIZE = 1024 * 1024
COMPRESSION_LEVEL = 6
# negative wbits: raw deflate, no zlib header or trailer
DEFLATE_WBITS = -15


def chunk_count_for(length: int, chunk_size: int) -> int:
    # An empty payload still occupies one (empty) chunk.
    return max(1, -(-length // chunk_size))


def read_blocks(fileobj: BinaryIO, block_size: int = READ_SIZE) -> Iterator[bytes]:
    while True:
        data = fileobj.read(block_size)
        if not data:
            break
        yield data


def compress_blocks(blocks: Iterable[bytes], compression: Compression) -> Iterator[bytes]:
    """Yield the compressed form of a plaintext block stream."""
    if compression is Compression.NONE:
        for block in blocks:
            if block:
                yield block
        return

    comp = zlib.compressobj(COMPRESSION_LEVEL, zlib.DEFLATED, DEFLATE_WBITS)
    for block in blocks:
        out = comp.compress(block)
        if out:
            yield out
    tail = comp.flush()
    if tail:
        yield tail


def compress_bytes(data: bytes, compression: Compression = Compression.DEFLATE) -> bytes:
    return b"".join(compress_blocks([data], compression))


def iter_chunks(blocks: Iterable[bytes], chunk_size: int) -> Iterator[bytes]:
    """Re-block a byte stream into ``chunk_size`` pieces; the last may be shorter.

    At least one chunk is always produced.
    """
    validate_chunk_size(chunk_size)
    buf = bytearray()
    emitted = False
    for block in blocks:
        buf += block
        while len(buf) >= chunk_size:
            yield bytes(buf[:chunk_size])
            del buf[:chunk_size]
            emitted = True
    if buf or not emitted:
        yield bytes(buf)


class StreamDecompressor:
    """
    Single continuous decompressor fed chunk by chunk.

    ``feed`` yields output in pieces of at most ``max_output`` bytes so a
    highly compressible chunk cannot balloon memory use.
    """

    def __init__(self, compression: Compression, max_output: int = READ_SIZE):
        self.compression = compression
        self.max_output = max_output
        self._obj = None
        if compression is Compression.DEFLATE:
            self._obj = zlib.decompressobj(DEFLATE_WBITS)

    def feed(self, data: bytes) -> Iterator[bytes]:
        if self._obj is None:
            for i in range(0, len(data), self.max_output):
                yield data[i:i + self.max_output]
            return

        pending = data
        while pending:
            if self._obj.eof:
                raise ArchiveCorruptError("unexpected data after end of compressed payload")
            try:
                out = self._obj.decompress(pending, self.max_output)
            except zlib.error:
                raise ArchiveCorruptError("payload failed to decompress") from None
            if out:
                yield out
            pending = self._obj.unconsumed_tail
            if self._obj.unused_data:
                raise ArchiveCorruptError("unexpected data after end of compressed payload")

    def finish(self) -> bytes:
        if self._obj is None:
            return b""
        try:
            tail = self._obj.flush()
        except zlib.error:
            raise ArchiveCorruptError("payload failed to decompress") from None
        if not self._obj.eof:
            raise ArchiveCorruptError("compressed payload is truncated")
        return tail
