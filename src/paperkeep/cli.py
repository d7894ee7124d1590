"""
Command-line interface for Paperkeep.

Provides commands for inspecting local receipt storage, adding receipts,
exporting and importing encrypted backups, and managing device keys.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
import uuid
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, NoReturn

from paperkeep import __version__
from paperkeep.backup import BackupService, ImportStrategy
from paperkeep.config.settings import (
    DEFAULT_CONFIG_DIR,
    VALID_STRATEGIES,
    ConfigurationError,
    Settings,
    load_config,
)
from paperkeep.errors import PaperkeepError
from paperkeep.security import KeyStore, validate_password
from paperkeep.storage import Receipt, ReceiptStore
from paperkeep.storage.models import parse_timestamp

# Set up logging
logger = logging.getLogger(__name__)

PASSWORD_ENV_VAR = "PAPERKEEP_PASSWORD"

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def format_bytes(size: int) -> str:
    """Format a byte count for display (e.g. 1.5 MB)."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def format_amount(cents: int) -> str:
    return f"{cents // 100}.{cents % 100:02d}"


def parse_amount(value: str) -> int:
    """
    Parse a decimal amount ("12.34") into minor currency units.

    Raises:
        argparse.ArgumentTypeError: If the amount is not a non-negative
            number with at most two decimal places.
    """
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"Invalid amount: {value}") from None
    if not amount.is_finite() or amount < 0 or amount != amount.quantize(Decimal("0.01")):
        raise argparse.ArgumentTypeError(f"Invalid amount: {value}")
    return int(amount * 100)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for Paperkeep CLI."""
    parser = argparse.ArgumentParser(
        prog="paperkeep",
        description="Local-first receipt storage with encrypted backups",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"paperkeep {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.paperkeep/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show storage information",
        description="Display version, paths, storage usage and keystore status.",
    )
    info_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    info_parser.set_defaults(func=cmd_info)

    # list command
    list_parser = subparsers.add_parser(
        "list",
        help="List stored receipts",
        description="List every receipt in local storage, oldest first.",
    )
    list_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    list_parser.set_defaults(func=cmd_list)

    # add command
    add_parser = subparsers.add_parser(
        "add",
        help="Add a receipt",
        description="Add a receipt to local storage, optionally with its photo.",
    )
    add_parser.add_argument("--store", required=True, help="Merchant name")
    add_parser.add_argument(
        "--amount",
        required=True,
        type=parse_amount,
        help="Total amount, e.g. 12.34",
    )
    add_parser.add_argument(
        "--date",
        help="Purchase date as ISO-8601 (default: now)",
    )
    add_parser.add_argument(
        "--tag",
        action="append",
        default=[],
        dest="tags",
        help="Tag (can be repeated)",
    )
    add_parser.add_argument("--notes", help="Free-text notes")
    add_parser.add_argument("--image", metavar="PATH", help="Receipt photo")
    add_parser.add_argument("--id", dest="receipt_id", help="Receipt id (default: random)")
    add_parser.set_defaults(func=cmd_add)

    # export command
    export_parser = subparsers.add_parser(
        "export",
        help="Export an encrypted backup",
        description=(
            "Write every receipt and photo to a password-protected zip archive. "
            f"The password is read from {PASSWORD_ENV_VAR} or prompted for."
        ),
    )
    export_parser.add_argument(
        "--output",
        metavar="DIR",
        help="Output directory (default: export.output_dir from config)",
    )
    export_parser.set_defaults(func=cmd_export)

    # import command
    import_parser = subparsers.add_parser(
        "import",
        help="Import an encrypted backup",
        description="Restore receipts from a backup archive.",
    )
    import_parser.add_argument("file", metavar="FILE", help="Backup archive")
    import_parser.add_argument(
        "--strategy",
        choices=VALID_STRATEGIES,
        help="How to handle receipts that already exist (default: from config)",
    )
    import_parser.set_defaults(func=cmd_import)

    # verify command
    verify_parser = subparsers.add_parser(
        "verify",
        help="Check a backup archive",
        description="Check an archive's structure, and with --decrypt its password.",
    )
    verify_parser.add_argument("file", metavar="FILE", help="Backup archive")
    verify_parser.add_argument(
        "--decrypt",
        action="store_true",
        help="Also decrypt the metadata (asks for the password)",
    )
    verify_parser.set_defaults(func=cmd_verify)

    # keys command
    keys_parser = subparsers.add_parser(
        "keys",
        help="Manage device keys",
        description="Inspect or reset the device master key and salt.",
    )
    keys_subparsers = keys_parser.add_subparsers(
        dest="keys_command",
        metavar="<action>",
    )
    keys_status_parser = keys_subparsers.add_parser("status", help="Show keystore status")
    keys_status_parser.set_defaults(func=cmd_keys_status)
    keys_reset_parser = keys_subparsers.add_parser(
        "reset",
        help="Delete the device keys (irreversible)",
    )
    keys_reset_parser.add_argument(
        "--force",
        action="store_true",
        help="Confirm the reset",
    )
    keys_reset_parser.set_defaults(func=cmd_keys_reset)
    keys_parser.set_defaults(func=lambda args: _print_help(keys_parser))

    return parser


def _print_help(parser: argparse.ArgumentParser) -> int:
    parser.print_help()
    return 1


def setup_logging(verbose: int, quiet: bool, default_level: str = "WARNING") -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.ERROR
    elif verbose == 0:
        level = getattr(logging, default_level.upper(), logging.WARNING)
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    return load_config(config_path)


def _get_keystore(settings: Settings) -> KeyStore:
    return KeyStore(
        service_name=settings.keystore.service_name,
        allow_insecure_fallback=settings.keystore.allow_insecure_fallback,
    )


def read_password(confirm: bool = False) -> str:
    """
    Get the backup password from the environment or an interactive prompt.

    Args:
        confirm: Ask twice and require both entries to match.

    Raises:
        ValueError: If the confirmation does not match.
    """
    env_password = os.environ.get(PASSWORD_ENV_VAR)
    if env_password:
        return env_password

    password = getpass.getpass("Backup password: ")
    if confirm and getpass.getpass("Confirm password: ") != password:
        raise ValueError("Passwords do not match")
    return password


def cmd_info(args: argparse.Namespace) -> int:
    """Show storage information."""
    import platform as platform_module

    settings = _load_settings(args)
    service = BackupService.from_settings(settings)
    storage = service.get_storage_info()
    keystore = _get_keystore(settings)

    info: dict[str, Any] = {
        "version": __version__,
        "python_version": platform_module.python_version(),
        "config_dir": str(DEFAULT_CONFIG_DIR),
        "data_dir": str(Path(settings.data_dir).expanduser()),
        "export_dir": str(Path(settings.export.output_dir).expanduser()),
        "storage": storage.to_dict(),
        "keystore_secure": keystore.is_secure,
    }

    if args.json:
        output(json.dumps(info, indent=2), force=True)
        return 0

    output("Paperkeep Information")
    output("=" * 60)
    output()
    output(f"Version: {info['version']}")
    output(f"Python: {info['python_version']}")
    output()
    output("Paths:")
    output(f"  Config directory: {info['config_dir']}")
    output(f"  Data directory: {info['data_dir']}")
    output(f"  Export directory: {info['export_dir']}")
    output()
    output("Storage:")
    output(f"  Receipts: {storage.record_count:,}")
    output(f"  Photos: {storage.attachment_count:,}")
    output(f"  Total size: {format_bytes(storage.total_bytes)}")
    output()
    output(f"Keystore: {'system keyring' if info['keystore_secure'] else 'file (reduced protection)'}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    """List stored receipts."""
    settings = _load_settings(args)
    store = ReceiptStore(Path(settings.data_dir).expanduser())
    receipts = store.list_receipts()

    if args.json:
        output(json.dumps([r.to_dict() for r in receipts], indent=2), force=True)
        return 0

    if not receipts:
        output("No receipts stored.")
        return 0

    output(f"{'ID':<38} {'Date':<12} {'Store':<24} {'Amount':>10}")
    output("-" * 87)
    for receipt in receipts:
        output(
            f"{receipt.id:<38} {receipt.date.strftime('%Y-%m-%d'):<12} "
            f"{receipt.store_name[:24]:<24} {format_amount(receipt.total_amount):>10}"
        )
    output()
    output(f"{len(receipts)} receipt(s)")
    return 0


def cmd_add(args: argparse.Namespace) -> int:
    """Add a receipt."""
    settings = _load_settings(args)
    store = ReceiptStore(Path(settings.data_dir).expanduser())

    try:
        date = parse_timestamp(args.date, "date") if args.date else datetime.now(UTC)
        receipt = Receipt(
            id=args.receipt_id or str(uuid.uuid4()),
            store_name=args.store,
            date=date,
            total_amount=args.amount,
            tags=list(args.tags),
            notes=args.notes,
        )
    except ValueError as e:
        output_error(f"Invalid receipt: {e}")
        return 1

    image = Path(args.image) if args.image else None
    if image is not None and not image.is_file():
        output_error(f"Image not found: {image}")
        return 1

    store.save_receipt(receipt, image=image)
    output(f"Added receipt {receipt.id}")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Export an encrypted backup."""
    settings = _load_settings(args)
    service = BackupService.from_settings(settings)
    if args.output:
        service.writer.output_dir = Path(args.output)

    try:
        password = read_password(confirm=True)
    except ValueError as e:
        output_error(str(e))
        return 1

    valid, message = validate_password(password)
    if not valid:
        output_error(message or "Invalid password")
        return 1

    output("Exporting receipts...")
    archive_path = service.export_data(password)
    output(f"Backup written to {archive_path}", force=True)
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """Import an encrypted backup."""
    settings = _load_settings(args)
    service = BackupService.from_settings(settings)
    strategy = ImportStrategy.parse(args.strategy or settings.import_.default_strategy)

    archive_path = Path(args.file)
    # Reject a malformed archive before asking for a password
    service.reader.verify_structure(archive_path)

    password = read_password()
    output(f"Importing {archive_path.name} (strategy: {strategy.value})...")
    result = service.import_data(archive_path, password, strategy)

    output(f"Imported: {result.imported}", force=True)
    output(f"Skipped: {result.skipped}", force=True)
    for warning in result.warnings:
        output_error(f"Warning: {warning}")
    if not result.success:
        output_error(f"Errors ({len(result.errors)}):")
        for message in result.display_errors(settings.import_.max_display_errors):
            output_error(f"  {message}")
        return 1
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Check a backup archive."""
    settings = _load_settings(args)
    service = BackupService.from_settings(settings)
    archive_path = Path(args.file)

    service.reader.verify_structure(archive_path)
    output(f"Structure OK: {archive_path}")

    if args.decrypt:
        metadata = service.reader.read_metadata(archive_path, read_password())
        output(f"Format version: {metadata.version}")
        output(f"Exported: {metadata.export_date}")
        output(f"Receipts: {len(metadata.records)}")
        if not metadata.count_matches:
            output_error(
                f"Warning: archive declares {metadata.record_count} receipts "
                f"but contains {len(metadata.records)}"
            )
    return 0


def cmd_keys_status(args: argparse.Namespace) -> int:
    """Show keystore status."""
    keystore = _get_keystore(_load_settings(args))
    output(f"Backend: {'system keyring' if keystore.is_secure else keystore.fallback_path}")
    output(f"Keys present: {'Yes' if keystore.has_keys() else 'No'}")
    if not keystore.is_secure:
        output("Warning: device keys are stored with reduced protection.")
    return 0


def cmd_keys_reset(args: argparse.Namespace) -> int:
    """Delete the device keys."""
    if not args.force:
        output_error(
            "This permanently deletes the device keys. "
            "Data encrypted with them cannot be recovered. Re-run with --force."
        )
        return 1

    keystore = _get_keystore(_load_settings(args))
    keystore.clear()
    output("Device keys deleted.")
    return 0


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for Paperkeep CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    default_level = "WARNING"
    if args.command is not None:
        try:
            default_level = _load_settings(args).log_level
        except ConfigurationError:
            pass  # reported again when the command loads it

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet, default_level)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except PaperkeepError as e:
        logger.debug(f"{e.code.value}: {e.message}")
        output_error(f"Error: {e.user_message}")
        sys.exit(1)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
