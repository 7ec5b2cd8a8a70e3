#!/usr/bin/env python3
"""
Main entry point for Chat Import.

Provides a command-line interface to validate, import and roll back chat
export files, and to serve the HTTP API.
"""
from typing import List, Optional
import argparse
import json
import sys
import logging
from pathlib import Path

from chat_import.config import ImportSettings, get_config
from chat_import.database import DatabaseConnection
from chat_import.importer.errors import ConfigError, ImportInProgressError, ImportNotFoundError
from chat_import.importer.formats import describe_formats, render_template
from chat_import.importer.models import SourceFormat
from chat_import.importer.service import ImportService
from chat_import.importer.store import SQLiteParticipantDirectory
from chat_import.logger_config import setup_logging
from chat_import.utils import Colors, format_file_size, format_message_count, format_percentage
from chat_import.visualization import (
    daily_counts_to_rows,
    plot_batch_outcomes,
    plot_import_timeline,
)

# Setup logging
setup_logging(level=logging.INFO)


def print_section(title: str) -> None:
    """Print a formatted section title."""
    print(f"\n{Colors.BOLD}{Colors.HEADER}{'=' * 60}{Colors.ENDC}")
    print(f"{Colors.BOLD}{Colors.HEADER}{title}{Colors.ENDC}")
    print(f"{Colors.BOLD}{Colors.HEADER}{'=' * 60}{Colors.ENDC}\n")


def _add_settings_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--format",
        default=None,
        help="Export format: whatsapp, telegram, imessage, generic or auto (default: auto).",
    )
    parser.add_argument(
        "--encoding",
        default=None,
        help="File encoding, or auto to detect (default: auto).",
    )


def _parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Import chat export files into a chat history.")
    parser.add_argument(
        "--db-path",
        default=None,
        help="Path to the import database (default: ~/.chat_import/chat_import.db).",
    )
    parser.add_argument("--json", action="store_true", help="Print results as JSON.")
    sub = parser.add_subparsers(dest="command", required=True)

    p_validate = sub.add_parser("validate", help="Validate an export without importing it.")
    p_validate.add_argument("file", help="Path to the export file.")
    _add_settings_args(p_validate)

    p_import = sub.add_parser("import", help="Import an export file into a chat.")
    p_import.add_argument("file", help="Path to the export file.")
    p_import.add_argument("--chat", required=True, help="Target chat id.")
    p_import.add_argument("--user", required=True, help="Importing user's participant id.")
    p_import.add_argument("--batch-size", default=None, help="Messages per batch (default: 1000).")
    p_import.add_argument(
        "--no-rollback",
        action="store_true",
        help="Keep committed batches if the import fails part way.",
    )
    p_import.add_argument(
        "--plot",
        default=None,
        metavar="DIR",
        help="Write timeline and batch charts (HTML) into DIR.",
    )
    _add_settings_args(p_import)

    p_rollback = sub.add_parser("rollback", help="Roll back an import.")
    p_rollback.add_argument("import_id", help="Import id to roll back.")
    p_rollback.add_argument("--chat", required=True, help="Chat the import belongs to.")

    p_stats = sub.add_parser("stats", help="List a chat's imports.")
    p_stats.add_argument("--chat", required=True, help="Chat id.")

    p_participants = sub.add_parser("participants", help="Manage chat participants.")
    p_participants.add_argument("action", choices=["add", "list"])
    p_participants.add_argument("--chat", required=True, help="Chat id.")
    p_participants.add_argument("--name", default=None, help="Display name (for add).")
    p_participants.add_argument("--id", default=None, help="Participant id (for add).")

    p_formats = sub.add_parser("formats", help="List export formats.")
    p_formats.add_argument(
        "--template",
        default=None,
        choices=[f.value for f in SourceFormat],
        help="Print a sample CSV for this format.",
    )

    p_serve = sub.add_parser("serve", help="Run the HTTP API.")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)

    return parser.parse_args(argv)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _cmd_validate(
    args: argparse.Namespace, service: ImportService, settings: ImportSettings
) -> int:
    report = service.validate(args.file, settings)
    if args.json:
        _print_json(report.to_dict())
        return 0 if report.is_valid else 1

    print_section("Validation")
    color = Colors.OKGREEN if report.is_valid else Colors.FAIL
    print(f"{color}{report}{Colors.ENDC}")
    if report.stats.get("fileSize") is not None:
        print(f"File size: {format_file_size(report.stats['fileSize'])}")
    for warning in report.warnings:
        print(f"{Colors.WARNING}  ! {warning.code}: {warning.message}{Colors.ENDC}")
    return 0 if report.is_valid else 1


def _write_plots(plot_dir: Path, report) -> None:
    plot_dir.mkdir(parents=True, exist_ok=True)
    plot_import_timeline(
        daily_counts_to_rows(report.parse_stats.daily_counts),
        output_file=str(plot_dir / "timeline.html"),
    )
    if report.outcome is not None:
        plot_batch_outcomes(report.outcome.batches, output_file=str(plot_dir / "batches.html"))
    print(f"{Colors.OKCYAN}Charts written to {plot_dir}{Colors.ENDC}")


def _cmd_import(args: argparse.Namespace, service: ImportService, settings: ImportSettings) -> int:
    report = service.import_file(args.file, args.chat, args.user, settings)
    if args.plot:
        _write_plots(Path(args.plot), report)
    if args.json:
        _print_json(report.to_dict())
        return 0 if report.success else 1

    print_section("Import")
    color = Colors.OKGREEN if report.success else Colors.FAIL
    print(f"{color}{report}{Colors.ENDC}")
    if report.outcome is not None:
        o = report.outcome
        print(
            f"Success rate: {format_percentage(o.imported_count, o.processed_count)} "
            f"({format_message_count(o.imported_count)} messages)"
        )
    for error in report.errors[:10]:
        print(f"{Colors.WARNING}  row {error.row_index}: {error.reason}{Colors.ENDC}")
    if len(report.errors) > 10:
        print(f"  ... and {len(report.errors) - 10} more")
    return 0 if report.success else 1


def _cmd_rollback(args: argparse.Namespace, service: ImportService) -> int:
    try:
        result = service.rollback_import(args.chat, args.import_id)
    except (ImportNotFoundError, ImportInProgressError) as e:
        print(f"{Colors.FAIL}Error: {e}{Colors.ENDC}")
        return 1
    if args.json:
        _print_json({"rollback": result.to_dict()})
    elif result.success:
        note = " (already rolled back)" if result.already_rolled_back else ""
        print(
            f"{Colors.OKGREEN}Rolled back {args.import_id}: "
            f"{result.deleted_count} messages deleted{note}{Colors.ENDC}"
        )
    else:
        print(f"{Colors.FAIL}Rollback failed: {result.error}{Colors.ENDC}")
    return 0 if result.success else 1


def _cmd_stats(args: argparse.Namespace, service: ImportService) -> int:
    entries = service.get_import_stats(args.chat)
    if args.json:
        _print_json({"imports": [e.to_dict() for e in entries]})
        return 0

    print_section(f"Imports for {args.chat}")
    if not entries:
        print("No imports yet.")
    for entry in entries:
        print(
            f"  {entry.import_id}  {entry.status.value:16s} "
            f"{entry.total_imported:>8,} imported  {entry.total_skipped:>6,} skipped  "
            f"{entry.file_name}"
        )
    return 0


def _cmd_participants(args: argparse.Namespace, db: DatabaseConnection) -> int:
    directory = SQLiteParticipantDirectory(db.connection)
    if args.action == "add":
        if not args.name:
            print(f"{Colors.FAIL}Error: --name is required for add{Colors.ENDC}")
            return 1
        participant = directory.add_participant(args.chat, args.name, args.id)
        print(f"{Colors.OKGREEN}Added {participant.display_name} ({participant.id}){Colors.ENDC}")
        return 0

    participants = directory.get_participants(args.chat)
    if args.json:
        _print_json([{"id": p.id, "displayName": p.display_name} for p in participants])
        return 0
    for i, p in enumerate(participants, 1):
        print(f"{i:2d}. {p.display_name:30s} {p.id}")
    return 0


def _cmd_formats(args: argparse.Namespace) -> int:
    if args.template:
        sys.stdout.write(render_template(SourceFormat(args.template)))
        return 0
    formats = describe_formats()
    if args.json:
        _print_json(formats)
        return 0
    print_section("Export Formats")
    for fmt in formats:
        print(f"{Colors.BOLD}{fmt['name']}{Colors.ENDC} ({fmt['format']})")
        print(f"  {fmt['description']}")
        print(f"  Columns: {', '.join(fmt['requiredColumns'])}")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("chat_import.api:app", host=args.host, port=args.port)
    return 0


def main(argv: Optional[List[str]] = None):
    """Main function."""
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)

    if args.command == "formats":
        sys.exit(_cmd_formats(args))
    if args.command == "serve":
        sys.exit(_cmd_serve(args))

    try:
        settings = ImportSettings.from_request(
            format=getattr(args, "format", None),
            encoding=getattr(args, "encoding", None),
            batch_size=getattr(args, "batch_size", None),
            enable_rollback=False if getattr(args, "no_rollback", False) else None,
            base=ImportSettings.from_env(),
        )
    except ConfigError as e:
        print(f"{Colors.FAIL}Error: {e}{Colors.ENDC}")
        sys.exit(2)

    config = get_config(db_path=args.db_path)
    if not args.json:
        print(f"{Colors.OKGREEN}Using database: {config.db_path_str}{Colors.ENDC}")

    try:
        with DatabaseConnection(config) as db:
            service = ImportService(db.connection, settings)
            if args.command == "validate":
                code = _cmd_validate(args, service, settings)
            elif args.command == "import":
                code = _cmd_import(args, service, settings)
            elif args.command == "rollback":
                code = _cmd_rollback(args, service)
            elif args.command == "stats":
                code = _cmd_stats(args, service)
            else:
                code = _cmd_participants(args, db)
    except Exception as e:
        print(f"{Colors.FAIL}Error: {e}{Colors.ENDC}")
        logging.exception("Error during execution")
        sys.exit(1)

    sys.exit(code)


if __name__ == '__main__':
    main()
