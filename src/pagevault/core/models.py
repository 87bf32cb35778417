"""
Data models for the public archive manifest (envelope) and its key slots
"""

import base64
import binascii
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pagevault.core.exceptions import ArchiveCorruptError, ConfigurationError, SlotNotFoundError

SCHEMA_VERSION = 2
KEY_LEN = 32
SALT_LEN = 16
NONCE_LEN = 12
TAG_LEN = 16
EXPORT_ID_LEN = 16
WRAPPED_DEK_LEN = KEY_LEN + TAG_LEN
MAX_INDEX = 0xFFFFFFFF

# Argon2id floor; anything below is rejected, never clamped.
MIN_MEMORY_KB = 65536
MIN_ITERATIONS = 3
MIN_PARALLELISM = 4

DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
MAX_CHUNK_SIZE = 32 * 1024 * 1024


class SlotType(Enum):
    # The credential kind a slot was sealed for
    PASSWORD = "password"
    RECOVERY = "recovery"

    @property
    def kdf_name(self) -> str:
        return "argon2id" if self is SlotType.PASSWORD else "hkdf-sha256"


class Compression(Enum):
    DEFLATE = "deflate"
    NONE = "none"


def validate_chunk_size(chunk_size: int) -> int:
    if not isinstance(chunk_size, int) or isinstance(chunk_size, bool):
        raise ConfigurationError("chunk size must be an integer")
    if chunk_size <= 0:
        raise ConfigurationError("chunk size must be positive")
    if chunk_size > MAX_CHUNK_SIZE:
        raise ConfigurationError(
            f"chunk size {chunk_size} exceeds the maximum of {MAX_CHUNK_SIZE} bytes"
        )
    return chunk_size


def chunk_file_name(index: int) -> str:
    return f"payload/chunk-{index:05d}.bin"


def _b64(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def _unb64(value: Any, name: str, length: int) -> bytes:
    try:
        raw = base64.b64decode(str(value).encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError):
        raise ArchiveCorruptError(f"manifest field {name} is not valid base64") from None
    if len(raw) != length:
        raise ArchiveCorruptError(f"manifest field {name} must be {length} bytes, got {len(raw)}")
    return raw


@dataclass(frozen=True)
class KdfParams:
    """Argon2id cost parameters (memory in KiB)."""

    memory_kb: int = MIN_MEMORY_KB
    iterations: int = MIN_ITERATIONS
    parallelism: int = MIN_PARALLELISM

    def __post_init__(self):
        if self.memory_kb < MIN_MEMORY_KB:
            raise ConfigurationError(
                f"KDF memory cost {self.memory_kb} KiB is below the minimum of {MIN_MEMORY_KB} KiB"
            )
        if self.iterations < MIN_ITERATIONS:
            raise ConfigurationError(
                f"KDF time cost {self.iterations} is below the minimum of {MIN_ITERATIONS}"
            )
        if self.parallelism < MIN_PARALLELISM:
            raise ConfigurationError(
                f"KDF parallelism {self.parallelism} is below the minimum of {MIN_PARALLELISM}"
            )

    def to_dict(self) -> Dict[str, int]:
        return {
            "memory_kb": self.memory_kb,
            "iterations": self.iterations,
            "parallelism": self.parallelism,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KdfParams":
        return cls(
            memory_kb=int(data["memory_kb"]),
            iterations=int(data["iterations"]),
            parallelism=int(data["parallelism"]),
        )


@dataclass(frozen=True)
class Credential:
    """A secret offered for sealing a new slot. Never serialized."""

    label: str
    secret: bytes = field(repr=False)
    slot_type: SlotType = SlotType.PASSWORD

    @classmethod
    def password(cls, label: str, password) -> "Credential":
        if isinstance(password, str):
            password = password.encode("utf-8")
        return cls(label=label, secret=bytes(password), slot_type=SlotType.PASSWORD)

    @classmethod
    def recovery(cls, label: str, secret: bytes) -> "Credential":
        return cls(label=label, secret=bytes(secret), slot_type=SlotType.RECOVERY)


@dataclass(frozen=True)
class KeySlot:
    """One wrapped copy of the DEK bound to one credential."""

    id: int
    label: str
    slot_type: SlotType
    salt: bytes = field(repr=False)
    nonce: bytes = field(repr=False)
    wrapped_dek: bytes = field(repr=False)
    # Per-slot Argon2id cost; None means the envelope's kdf_defaults apply.
    argon2_params: Optional[KdfParams] = None

    def __post_init__(self):
        if not 0 <= self.id <= MAX_INDEX:
            raise ArchiveCorruptError(f"slot id {self.id} out of range")
        if len(self.salt) != SALT_LEN:
            raise ArchiveCorruptError("slot salt must be 16 bytes")
        if len(self.nonce) != NONCE_LEN:
            raise ArchiveCorruptError("slot nonce must be 12 bytes")
        if len(self.wrapped_dek) != WRAPPED_DEK_LEN:
            raise ArchiveCorruptError("wrapped DEK must be 48 bytes")
        if self.argon2_params is not None and self.slot_type is not SlotType.PASSWORD:
            raise ArchiveCorruptError("only password slots carry Argon2 parameters")

    def kdf_params_for(self, defaults: KdfParams) -> KdfParams:
        return self.argon2_params or defaults

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "slot_type": self.slot_type.value,
            "kdf": self.slot_type.kdf_name,
            "label": self.label,
            "salt": _b64(self.salt),
            "nonce": _b64(self.nonce),
            "wrapped_dek": _b64(self.wrapped_dek),
        }
        if self.argon2_params is not None:
            data["argon2_params"] = self.argon2_params.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeySlot":
        try:
            slot_type = SlotType(data.get("slot_type", "password"))
            slot_id = int(data["id"])
            label = str(data.get("label", ""))
            salt, nonce, wrapped = data["salt"], data["nonce"], data["wrapped_dek"]
        except (KeyError, TypeError, ValueError):
            raise ArchiveCorruptError("malformed key slot entry") from None
        argon2_params = None
        if data.get("argon2_params") is not None:
            try:
                argon2_params = KdfParams.from_dict(data["argon2_params"])
            except (KeyError, TypeError, ValueError, ConfigurationError) as exc:
                raise ArchiveCorruptError(f"key slot has invalid Argon2 parameters: {exc}") from None
        return cls(
            id=slot_id,
            label=label,
            slot_type=slot_type,
            salt=_unb64(salt, "salt", SALT_LEN),
            nonce=_unb64(nonce, "nonce", NONCE_LEN),
            wrapped_dek=_unb64(wrapped, "wrapped_dek", WRAPPED_DEK_LEN),
            argon2_params=argon2_params,
        )

    def summary(self) -> Dict[str, Any]:
        return {"id": self.id, "label": self.label, "slot_type": self.slot_type.value}


@dataclass(frozen=True)
class ExportEnvelope:
    """
    Public, non-secret archive manifest.

    Instances are immutable snapshots: slot operations return a new
    envelope and leave the one a reader already holds untouched.
    """

    export_id: bytes = field(repr=False)
    base_nonce: bytes = field(repr=False)
    kdf_params: KdfParams
    compression: Compression
    chunk_size: int
    chunk_count: int
    key_slots: Tuple[KeySlot, ...]
    version: int = SCHEMA_VERSION

    def __post_init__(self):
        if len(self.export_id) != EXPORT_ID_LEN:
            raise ArchiveCorruptError("export_id must be 16 bytes")
        if len(self.base_nonce) != NONCE_LEN:
            raise ArchiveCorruptError("base_nonce must be 12 bytes")
        if self.version != SCHEMA_VERSION:
            raise ArchiveCorruptError(f"unsupported archive version {self.version}")
        if not 1 <= self.chunk_count <= MAX_INDEX + 1:
            raise ArchiveCorruptError("chunk_count out of range")
        if not self.key_slots:
            raise ArchiveCorruptError("envelope has no key slots")
        ids = [slot.id for slot in self.key_slots]
        if len(set(ids)) != len(ids):
            raise ArchiveCorruptError("duplicate key slot ids")
        pairs = [(slot.salt, slot.nonce) for slot in self.key_slots]
        if len(set(pairs)) != len(pairs):
            raise ArchiveCorruptError("duplicate key slot salt/nonce")

    @property
    def export_id_hex(self) -> str:
        return self.export_id.hex()

    @property
    def chunk_files(self) -> Tuple[str, ...]:
        return tuple(chunk_file_name(i) for i in range(self.chunk_count))

    def get_slot(self, slot_id: int) -> KeySlot:
        for slot in self.key_slots:
            if slot.id == slot_id:
                return slot
        raise SlotNotFoundError(f"no key slot with id {slot_id}")

    def has_slot(self, slot_id: int) -> bool:
        return any(slot.id == slot_id for slot in self.key_slots)

    def slots_of_type(self, slot_type: SlotType) -> Tuple[KeySlot, ...]:
        return tuple(slot for slot in self.key_slots if slot.slot_type is slot_type)

    def next_slot_id(self) -> int:
        return max(slot.id for slot in self.key_slots) + 1

    def with_slots(self, slots) -> "ExportEnvelope":
        return replace(self, key_slots=tuple(slots))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "export_id": _b64(self.export_id),
            "base_nonce": _b64(self.base_nonce),
            "compression": self.compression.value,
            "kdf_defaults": self.kdf_params.to_dict(),
            "payload": {
                "chunk_size": self.chunk_size,
                "chunk_count": self.chunk_count,
                "files": list(self.chunk_files),
            },
            "key_slots": [slot.to_dict() for slot in self.key_slots],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportEnvelope":
        if not isinstance(data, dict):
            raise ArchiveCorruptError("manifest must be a JSON object")
        try:
            payload = data["payload"]
            version = int(data["version"])
            compression = Compression(data["compression"])
            chunk_size = int(payload["chunk_size"])
            chunk_count = int(payload["chunk_count"])
            slots_raw = list(data["key_slots"])
            kdf_raw = data["kdf_defaults"]
            export_id, base_nonce = data["export_id"], data["base_nonce"]
        except (KeyError, TypeError, ValueError):
            raise ArchiveCorruptError("manifest is missing required fields") from None
        try:
            kdf_params = KdfParams.from_dict(kdf_raw)
            validate_chunk_size(chunk_size)
        except (KeyError, TypeError, ValueError, ConfigurationError) as exc:
            raise ArchiveCorruptError(f"manifest has invalid parameters: {exc}") from None
        return cls(
            export_id=_unb64(export_id, "export_id", EXPORT_ID_LEN),
            base_nonce=_unb64(base_nonce, "base_nonce", NONCE_LEN),
            kdf_params=kdf_params,
            compression=compression,
            chunk_size=chunk_size,
            chunk_count=chunk_count,
            key_slots=tuple(KeySlot.from_dict(s) for s in slots_raw),
            version=version,
        )

    def __repr__(self):
        return (
            f"ExportEnvelope(export_id={self.export_id_hex!r}, chunk_count={self.chunk_count}, "
            f"slots={[s.id for s in self.key_slots]})"
        )

