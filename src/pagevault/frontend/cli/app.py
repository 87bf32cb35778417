"""Command-line interface for pagevault archives.

Start here with `python -m pagevault.frontend.cli.app --help`
"""

from __future__ import annotations

import argparse
import getpass
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from pagevault.core.exceptions import (
    ArchiveCorruptError,
    AuthenticationFailed,
    ConfigurationError,
    InvariantViolation,
    LastSlotError,
    PageVaultError,
    SlotNotFoundError,
)
from pagevault.core.models import Compression, Credential, ExportEnvelope, SlotType
from pagevault.core.sink import FileSink
from pagevault.core.size import SizeEstimate, SizeLimit
from pagevault.core.storage import ArchiveStore
from pagevault.frontend.cli.context import AppContext, build_context
from pagevault.frontend.cli.logging_config import configure_logging
from pagevault.security.encryptor import EnvelopeEncryptor, export_archive
from pagevault.security.kdf import (
    decode_recovery_secret,
    encode_recovery_secret,
    generate_recovery_secret,
)
from pagevault.security.keystore import (
    delete_recovery_secret,
    load_recovery_secret,
    save_recovery_secret,
)
from pagevault.security.session import UnlockSession
from pagevault.security.slots import (
    add_slot_to_archive,
    list_slots,
    revoke_slot_in_archive,
    rotate_archive,
)
from pagevault.security.unlock import stream_payload, unlock

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_AUTH = 1
EXIT_USAGE = 2
EXIT_ARCHIVE = 3
EXIT_LAST_SLOT = 4
EXIT_INTERRUPTED = 130

PASSWORD_ENV = "PAGEVAULT_PASSWORD"
NEW_PASSWORD_ENV = "PAGEVAULT_NEW_PASSWORD"
RECOVERY_ENV = "PAGEVAULT_RECOVERY_SECRET"


# === Secret input ===


def _read_secret(env_name: str, prompt: str) -> str:
    value = os.environ.get(env_name)
    if value:
        return value
    return getpass.getpass(prompt)


def _new_password() -> str:
    value = os.environ.get(NEW_PASSWORD_ENV)
    if value:
        return value
    first = getpass.getpass("New password: ")
    if first != getpass.getpass("Repeat new password: "):
        raise ConfigurationError("passwords do not match")
    return first


def _unlock_secret(args: argparse.Namespace, envelope: ExportEnvelope) -> Tuple[object, SlotType]:
    """Pick the credential used to unlock an existing archive."""
    if args.from_keyring:
        secret = load_recovery_secret(envelope.export_id)
        if secret is None:
            raise ConfigurationError("no recovery secret stored in the OS keystore for this archive")
        return secret, SlotType.RECOVERY
    if args.unlock_recovery:
        text = _read_secret(RECOVERY_ENV, "Recovery secret: ")
        return decode_recovery_secret(text), SlotType.RECOVERY
    return _read_secret(PASSWORD_ENV, "Password: "), SlotType.PASSWORD


def _unlock_store(ctx: AppContext, args: argparse.Namespace) -> Tuple[ArchiveStore, ExportEnvelope, UnlockSession]:
    store = ArchiveStore(args.archive)
    envelope = store.load_envelope()
    secret, slot_type = _unlock_secret(args, envelope)
    session = unlock(envelope, secret, slot_type=slot_type, ttl_seconds=ctx.settings.session_ttl)
    return store, envelope, session


def _new_credentials(args: argparse.Namespace) -> Tuple[List[Credential], Optional[bytes]]:
    """Credentials for a fresh export or rotation: one password, plus an optional recovery slot."""
    credentials = [Credential.password(args.label, _new_password())]
    recovery = None
    if args.recovery:
        recovery = generate_recovery_secret()
        credentials.append(Credential.recovery("recovery", recovery))
    return credentials, recovery


def _print_recovery(secret: bytes) -> None:
    print(f"Recovery secret (store it somewhere safe): {encode_recovery_secret(secret)}", flush=True)


def _store_recovery(args: argparse.Namespace, export_id: bytes, secret: bytes) -> None:
    if args.keyring:
        save_recovery_secret(export_id, secret, force=args.force_keyring)
        print("Recovery secret saved to the OS keystore.")


# === Commands ===


def cmd_export(ctx: AppContext, args: argparse.Namespace) -> int:
    source = Path(args.source).expanduser()
    if not source.is_file():
        raise ConfigurationError(f"source file {source} does not exist")
    encryptor = EnvelopeEncryptor(
        kdf_params=ctx.settings.kdf_params,
        chunk_size=args.chunk_size or ctx.settings.chunk_size,
        compression=Compression.NONE if args.no_compress else Compression.DEFLATE,
        workers=args.workers,
    )
    credentials, recovery = _new_credentials(args)
    envelope = export_archive(source, args.archive, credentials, encryptor=encryptor)
    print(f"Exported {source} -> {args.archive}")
    print(f"  export id: {envelope.export_id_hex}")
    print(f"  chunks: {envelope.chunk_count}, key slots: {len(envelope.key_slots)}")
    if recovery is not None:
        _print_recovery(recovery)
        _store_recovery(args, envelope.export_id, recovery)
    return EXIT_OK


def cmd_decrypt(ctx: AppContext, args: argparse.Namespace) -> int:
    store, envelope, session = _unlock_store(ctx, args)
    output = Path(args.output).expanduser()
    with session:
        if args.cache:
            cache = ctx.cache
            cache.remember_origin(str(store.root.resolve()), envelope.export_id)
            cached = cache.lookup(envelope.export_id)
            if cached is None:
                stream_payload(session, store.read_chunk, cache.sink_for(envelope.export_id))
                cached = cache.lookup(envelope.export_id)
                if cached is None:
                    raise ArchiveCorruptError("cached payload failed verification")
            else:
                logger.info("using cached payload for export %s", envelope.export_id_hex)
            shutil.copyfile(cached, output)
            size = cached.stat().st_size
        else:
            size = stream_payload(session, store.read_chunk, FileSink(output))
    print(f"Decrypted {size} bytes -> {output}")
    return EXIT_OK


def cmd_estimate(ctx: AppContext, args: argparse.Namespace) -> int:
    source = Path(args.source).expanduser()
    if not source.is_file():
        raise ConfigurationError(f"source file {source} does not exist")
    estimate = SizeEstimate.from_plaintext_size(
        source.stat().st_size, args.chunk_size or ctx.settings.chunk_size
    )
    print(estimate.format_display())
    limit = estimate.check_limits()
    if limit is SizeLimit.WARNING:
        print(f"Warning: estimate is at {estimate.percent_of_limit}% of the 1 GiB limit.")
    elif limit is SizeLimit.EXCEEDS_LIMIT:
        print(f"Estimate exceeds the 1 GiB limit ({estimate.percent_of_limit}%).")
    return EXIT_OK


def cmd_list_slots(ctx: AppContext, args: argparse.Namespace) -> int:
    envelope = ArchiveStore(args.archive).load_envelope()
    print(f"export id: {envelope.export_id_hex}")
    for slot in list_slots(envelope):
        print(f"  {slot['id']:>3}  {slot['slot_type']:<9} {slot['label']}")
    return EXIT_OK


def cmd_add_slot(ctx: AppContext, args: argparse.Namespace) -> int:
    store, envelope, session = _unlock_store(ctx, args)
    with session:
        if args.recovery:
            secret = generate_recovery_secret()
            credential = Credential.recovery(args.label, secret)
        else:
            secret = None
            credential = Credential.password(args.label, _new_password())
        updated, slot = add_slot_to_archive(store, session, credential)
    print(f"Added {slot.slot_type.value} slot {slot.id} ({slot.label})")
    if secret is not None:
        _print_recovery(secret)
        _store_recovery(args, updated.export_id, secret)
    return EXIT_OK


def cmd_revoke_slot(ctx: AppContext, args: argparse.Namespace) -> int:
    store, envelope, session = _unlock_store(ctx, args)
    with session:
        revoke_slot_in_archive(store, args.slot_id, session=session)
    print(f"Revoked slot {args.slot_id}")
    return EXIT_OK


def cmd_rotate_keys(ctx: AppContext, args: argparse.Namespace) -> int:
    store = ArchiveStore(args.archive)
    envelope = store.load_envelope()
    old_secret, old_type = _unlock_secret(args, envelope)
    credentials, recovery = _new_credentials(args)
    rotated = rotate_archive(store, old_secret, credentials, old_slot_type=old_type)
    print(f"Rotated keys for export {rotated.export_id_hex}: {rotated.chunk_count} chunk(s) re-encrypted")
    if recovery is not None:
        _print_recovery(recovery)
    # every old recovery secret is dead now
    delete_recovery_secret(rotated.export_id)
    if recovery is not None:
        _store_recovery(args, rotated.export_id, recovery)
    return EXIT_OK


# === Parser ===


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def _add_unlock_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--unlock-recovery",
        action="store_true",
        help=f"unlock with a recovery secret (from ${RECOVERY_ENV} or a prompt) instead of a password",
    )
    parser.add_argument(
        "--from-keyring",
        action="store_true",
        help="unlock with the recovery secret stored in the OS keystore",
    )


def _add_new_credential_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--label", default="owner", help="label for the password slot")
    parser.add_argument("--recovery", action="store_true", help="also create a recovery slot")
    parser.add_argument("--keyring", action="store_true", help="save the new recovery secret in the OS keystore")
    parser.add_argument(
        "--force-keyring",
        action="store_true",
        help="store in the OS keystore even if the backend looks insecure",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pagevault", description="Encrypted portable archives.")
    parser.add_argument("-v", "--verbose", action="store_true", help="log progress to stderr")
    sub = parser.add_subparsers(dest="command", metavar="command")
    sub.required = True

    p = sub.add_parser("export", help="encrypt a file into a new archive")
    p.add_argument("source")
    p.add_argument("archive")
    p.add_argument("--chunk-size", type=_positive_int, help="payload chunk size in bytes")
    p.add_argument("--workers", type=_positive_int, default=1, help="parallel chunk encryption threads")
    p.add_argument("--no-compress", action="store_true", help="store the payload without deflate")
    _add_new_credential_options(p)
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("decrypt", help="unlock an archive and write its plaintext")
    p.add_argument("archive")
    p.add_argument("output")
    p.add_argument("--cache", action="store_true", help="keep a verified copy in the payload cache")
    _add_unlock_options(p)
    p.set_defaults(func=cmd_decrypt)

    p = sub.add_parser("estimate", help="estimate the archive size for a file")
    p.add_argument("source")
    p.add_argument("--chunk-size", type=_positive_int, help="payload chunk size in bytes")
    p.set_defaults(func=cmd_estimate)

    p = sub.add_parser("list-slots", help="show the key slots of an archive")
    p.add_argument("archive")
    p.set_defaults(func=cmd_list_slots)

    p = sub.add_parser("add-slot", help="unlock, then add a password or recovery slot")
    p.add_argument("archive")
    p.add_argument("--label", default="added", help="label for the new slot")
    p.add_argument("--recovery", action="store_true", help="add a generated recovery secret instead of a password")
    p.add_argument("--keyring", action="store_true", help="save a new recovery secret in the OS keystore")
    p.add_argument("--force-keyring", action="store_true")
    _add_unlock_options(p)
    p.set_defaults(func=cmd_add_slot)

    p = sub.add_parser("revoke-slot", help="remove a key slot")
    p.add_argument("archive")
    p.add_argument("slot_id", type=int)
    _add_unlock_options(p)
    p.set_defaults(func=cmd_revoke_slot)

    p = sub.add_parser("rotate-keys", help="re-encrypt under a new key and replace every slot")
    p.add_argument("archive")
    _add_unlock_options(p)
    _add_new_credential_options(p)
    p.set_defaults(func=cmd_rotate_keys)

    return parser


def exit_code_for(exc: PageVaultError) -> int:
    if isinstance(exc, AuthenticationFailed):
        return EXIT_AUTH
    if isinstance(exc, LastSlotError):
        return EXIT_LAST_SLOT
    if isinstance(exc, (ConfigurationError, SlotNotFoundError, InvariantViolation)):
        return EXIT_USAGE
    # ArchiveNotFoundError, ArchiveCorruptError, ChunkIntegrityError and the rest
    return EXIT_ARCHIVE


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        ctx = build_context()
        configure_logging(logging.INFO if args.verbose else ctx.settings.log_level)
        return args.func(ctx, args)
    except PageVaultError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exit_code_for(exc)
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_ARCHIVE
    except KeyboardInterrupt:
        print("cancelled", file=sys.stderr)
        return EXIT_INTERRUPTED


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
