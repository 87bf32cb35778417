"""
Pre-export size estimation against static-hosting limits.

Lets a caller warn before spending minutes compressing and encrypting a
payload that the hosting provider would refuse.
"""

from dataclasses import dataclass
from enum import Enum

from .codec import chunk_count_for
from .models import DEFAULT_CHUNK_SIZE, validate_chunk_size

MAX_SITE_SIZE_BYTES = 1024 * 1024 * 1024
SITE_SIZE_WARNING_BYTES = 900 * 1024 * 1024
AEAD_TAG_OVERHEAD = 16
STATIC_ASSETS_SIZE = 2 * 1024 * 1024
# typical raw-deflate ratio for text payloads
COMPRESSION_RATIO = 0.45


class SizeLimit(Enum):
    OK = "ok"
    WARNING = "warning"
    EXCEEDS_LIMIT = "exceeds_limit"


def format_bytes(num: int) -> str:
    # Simple human-readable bytes formatter.
    value = float(num)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024:
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} PB"


@dataclass(frozen=True)
class SizeEstimate:
    plaintext_bytes: int
    compressed_bytes: int
    encrypted_bytes: int
    static_assets_bytes: int
    total_site_bytes: int
    chunk_count: int
    chunk_size: int

    @classmethod
    def from_plaintext_size(cls, plaintext_bytes: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> "SizeEstimate":
        validate_chunk_size(chunk_size)
        if plaintext_bytes < 0:
            raise ValueError("plaintext size cannot be negative")
        compressed = int(plaintext_bytes * COMPRESSION_RATIO)
        chunk_count = chunk_count_for(compressed, chunk_size)
        encrypted = compressed + chunk_count * AEAD_TAG_OVERHEAD
        return cls(
            plaintext_bytes=plaintext_bytes,
            compressed_bytes=compressed,
            encrypted_bytes=encrypted,
            static_assets_bytes=STATIC_ASSETS_SIZE,
            total_site_bytes=encrypted + STATIC_ASSETS_SIZE,
            chunk_count=chunk_count,
            chunk_size=chunk_size,
        )

    def check_limits(self) -> SizeLimit:
        if self.total_site_bytes > MAX_SITE_SIZE_BYTES:
            return SizeLimit.EXCEEDS_LIMIT
        if self.total_site_bytes > SITE_SIZE_WARNING_BYTES:
            return SizeLimit.WARNING
        return SizeLimit.OK

    @property
    def percent_of_limit(self) -> int:
        return int(self.total_site_bytes / MAX_SITE_SIZE_BYTES * 100)

    def format_display(self) -> str:
        return (
            f"Estimated bundle size: {format_bytes(self.total_site_bytes)}\n"
            f"  Payload: {format_bytes(self.encrypted_bytes)} "
            f"({self.chunk_count} chunks x {format_bytes(self.chunk_size)} max)\n"
            f"  Static assets: {format_bytes(self.static_assets_bytes)}\n"
            f"  Compression ratio: ~{COMPRESSION_RATIO * 100:.0f}%"
        )
