# Main Entry Point - Command Line Interface
#
# python -m twofa_vault <command>   (or the `twofa-vault` console script)
#
# The master password is read from TWOFA_VAULT_PASSWORD when set,
# otherwise prompted for without echo.

import argparse
import asyncio
import getpass
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from . import __version__
from .core import EventSeverity, EventType, get_audit_logger, load_config
from .core.config import VaultConfig
from .vault import (
    EnvelopeService,
    SQLiteStorage,
    VaultError,
    VaultStore,
    format_otpauth_uri,
    get_time_window,
    get_totp_engine,
    parse_otpauth_uri,
)

PASSWORD_ENV = "TWOFA_VAULT_PASSWORD"


def _read_password(confirm: bool = False) -> str:
    password = os.environ.get(PASSWORD_ENV)
    if password:
        return password
    password = getpass.getpass("Master password: ")
    if confirm and getpass.getpass("Confirm master password: ") != password:
        raise VaultError("Passwords do not match")
    return password


def _open_store(config: VaultConfig) -> VaultStore:
    return VaultStore(
        SQLiteStorage(config.db_path),
        envelope_service=EnvelopeService(iterations=config.iterations),
        persist_delay_ms=config.persist_delay_ms,
    )


async def _unlocked_store(config: VaultConfig, confirm: bool = False) -> VaultStore:
    store = _open_store(config)
    await store.unlock(_read_password(confirm=confirm and not store.has_data()))
    return store


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

async def cmd_code(args, config: VaultConfig) -> int:
    # One clock reading so the expiry matches the printed code
    now_ms = int(time.time() * 1000)
    code = await get_totp_engine().generate(
        args.secret,
        digits=args.digits,
        period=args.period,
        algorithm=args.algorithm,
        timestamp_ms=now_ms,
    )
    window = get_time_window(args.period, now_ms)
    print(f"{code}  (expires in {window.expires_in}s)")
    return 0


async def cmd_init(args, config: VaultConfig) -> int:
    store = await _unlocked_store(config, confirm=True)
    stats = store.get_stats()
    print(f"Vault ready at {config.db_path}: {stats.count} entries, {stats.format_size()}")
    await store.lock(flush=True)
    return 0


async def cmd_add(args, config: VaultConfig) -> int:
    store = await _unlocked_store(config, confirm=True)
    try:
        entry = await store.add_entry({
            "issuer": args.issuer,
            "label": args.label,
            "secret": args.secret,
            "digits": args.digits,
            "period": args.period,
            "algorithm": args.algorithm,
            "tags": args.tag or [],
            "group": args.group,
        })
    finally:
        await store.lock(flush=True)
    print(f"Added {entry.issuer} / {entry.label} ({entry.id})")
    return 0


async def cmd_add_uri(args, config: VaultConfig) -> int:
    partial = parse_otpauth_uri(args.uri)
    store = await _unlocked_store(config, confirm=True)
    try:
        entry = await store.add_entry(partial)
    finally:
        await store.lock(flush=True)
    print(f"Added {entry.issuer} / {entry.label} ({entry.id})")
    return 0


async def cmd_list(args, config: VaultConfig) -> int:
    store = await _unlocked_store(config)
    try:
        entries = store.search(args.query) if args.query else store.get_entries()
        for entry in entries:
            tags = ", ".join(entry.tags)
            star = "*" if entry.favorite else " "
            line = f"{star} {entry.id}  {entry.issuer} / {entry.label}"
            if tags:
                line += f"  [{tags}]"
            if args.uri:
                line += f"\n    {format_otpauth_uri(entry)}"
            print(line)
        print(f"{len(entries)} entries")
    finally:
        await store.lock()
    return 0


async def cmd_codes(args, config: VaultConfig) -> int:
    store = await _unlocked_store(config)
    try:
        entries = store.search(args.query) if args.query else store.get_entries()
        tokens = await get_totp_engine().generate_batch(entries)
        for token in tokens:
            print(f"{token.code:>10}  {token.expires_in:>2}s  {token.issuer} / {token.label}")
        if args.mark_used and tokens:
            await store.increment_use_counts([token.id for token in tokens])
    finally:
        await store.lock(flush=True)
    return 0


async def cmd_export(args, config: VaultConfig) -> int:
    store = await _unlocked_store(config)
    try:
        backup = await store.export_encrypted()
    finally:
        await store.lock()
    if args.output:
        Path(args.output).write_text(backup, encoding="utf-8")
        print(f"Encrypted backup written to {args.output}")
    else:
        print(backup)
    return 0


async def cmd_restore(args, config: VaultConfig) -> int:
    backup = Path(args.file).read_text(encoding="utf-8")
    store = await _unlocked_store(config)
    try:
        entries = await store.restore_from_envelope(backup)
    finally:
        await store.lock(flush=True)
    print(f"Restored {len(entries)} entries")
    return 0


async def cmd_calibrate(args, config: VaultConfig) -> int:
    service = EnvelopeService(iterations=config.iterations)
    result = await service.calibrate_iterations(
        target_ms=args.target_ms or config.calibrate_target_ms,
        max_iterations=args.max_iterations,
    )
    print(f"{result.iterations} iterations ({result.duration_ms:.0f} ms per derivation)")
    print("Set TWOFA_VAULT_ITERATIONS to use this value for new envelopes.")
    return 0


async def cmd_clear(args, config: VaultConfig) -> int:
    if not args.yes:
        answer = input(f"Erase all vault data in {config.db_path}? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted")
            return 1
    store = _open_store(config)
    await store.clear_all()
    print("Vault erased")
    return 0


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------

def _add_code_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--digits", type=int, default=6, help="Code length (default: 6)")
    parser.add_argument("--period", type=int, default=30, help="Time step in seconds (default: 30)")
    parser.add_argument(
        "--algorithm",
        default="SHA-1",
        help="SHA-1 (default), SHA-256 or SHA-512",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="twofa-vault",
        description="twofa-vault - encrypted TOTP secret vault",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"twofa-vault v{__version__}",
    )
    parser.add_argument("--env-file", help="Load settings from this .env file")

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    code = commands.add_parser("code", help="Print the current code for a Base32 secret")
    code.add_argument("secret")
    _add_code_options(code)
    code.set_defaults(handler=cmd_code)

    init = commands.add_parser("init", help="Create (or open) the vault")
    init.set_defaults(handler=cmd_init)

    add = commands.add_parser("add", help="Add an entry")
    add.add_argument("--issuer", required=True)
    add.add_argument("--label", default="")
    add.add_argument("--secret", required=True)
    add.add_argument("--tag", action="append", help="Tag (repeatable)")
    add.add_argument("--group")
    _add_code_options(add)
    add.set_defaults(handler=cmd_add)

    add_uri = commands.add_parser("add-uri", help="Add an entry from an otpauth:// URI")
    add_uri.add_argument("uri")
    add_uri.set_defaults(handler=cmd_add_uri)

    list_ = commands.add_parser("list", help="List entries")
    list_.add_argument("query", nargs="?", help="Filter by issuer, label, tag, group or notes")
    list_.add_argument("--uri", action="store_true", help="Also print otpauth:// URIs")
    list_.set_defaults(handler=cmd_list)

    codes = commands.add_parser("codes", help="Print current codes for all entries")
    codes.add_argument("query", nargs="?")
    codes.add_argument("--mark-used", action="store_true", help="Count this as a use of each entry")
    codes.set_defaults(handler=cmd_codes)

    export = commands.add_parser("export", help="Export the encrypted backup")
    export.add_argument("--output", "-o", help="Write to file instead of stdout")
    export.set_defaults(handler=cmd_export)

    restore = commands.add_parser("restore", help="Replace all entries from an encrypted backup")
    restore.add_argument("file")
    restore.set_defaults(handler=cmd_restore)

    calibrate = commands.add_parser("calibrate", help="Measure a PBKDF2 iteration count for this machine")
    calibrate.add_argument("--target-ms", type=float, help="Target derivation time")
    calibrate.add_argument("--max-iterations", type=int, default=1_200_000)
    calibrate.set_defaults(handler=cmd_calibrate)

    clear = commands.add_parser("clear", help="Erase all vault data")
    clear.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    clear.set_defaults(handler=cmd_clear)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for twofa-vault."""
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.env_file)

    # Log startup
    get_audit_logger().log_event(
        event_type=EventType.SYSTEM_START,
        severity=EventSeverity.INFO,
        message="twofa-vault command started",
        details={"version": __version__, "command": args.command},
    )

    try:
        return asyncio.run(args.handler(args, config))
    except VaultError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
