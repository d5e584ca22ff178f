"""Command-line interface — run backups and inspect history from a shell."""

from __future__ import annotations

import argparse
import json
import signal
import sys
from pathlib import Path
from typing import Any

from loguru import logger

from confighistory.config import Config
from confighistory.context import create_context
from confighistory.errors import ConfigHistoryError
from confighistory.logger import setup_logger
from confighistory.service import ConfigHistoryService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="config-history",
        description="Back up, diff and restore Home Assistant configuration files.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s run
  %(prog)s backups automations.yaml
  %(prog)s diff automations.yaml current
  %(prog)s restore automations.yaml 2026-10-19_08-30-00-000000_00.yaml
  %(prog)s settings --cron "0 3 * * *" --max-backups 20
        """,
    )
    parser.add_argument("--data-dir", type=Path, default=None, help="Directory holding settings.json and logs")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at DEBUG level")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Back up every tracked config that changed")
    sub.add_parser("configs", help="List tracked configs with backup counts")

    p = sub.add_parser("backups", help="List backups of one config")
    p.add_argument("path")
    p.add_argument("--id", dest="config_id", default=None)

    p = sub.add_parser("show", help="Print the content of a backup")
    p.add_argument("path")
    p.add_argument("filename")
    p.add_argument("--id", dest="config_id", default=None)

    p = sub.add_parser("diff", help="Diff two backups ('current' = live content)")
    p.add_argument("path")
    p.add_argument("left", help="Older side; with RIGHT omitted, the backup to compare with its predecessor")
    p.add_argument("right", nargs="?", default=None)
    p.add_argument("--id", dest="config_id", default=None)

    p = sub.add_parser("restore", help="Overwrite the live config with a backup")
    p.add_argument("path")
    p.add_argument("filename")
    p.add_argument("--id", dest="config_id", default=None)

    p = sub.add_parser("delete", help="Delete one backup")
    p.add_argument("path")
    p.add_argument("filename")
    p.add_argument("--id", dest="config_id", default=None)

    p = sub.add_parser("purge", help="Delete every backup of a config")
    p.add_argument("path")
    p.add_argument("--id", dest="config_id", default=None)

    p = sub.add_parser("settings", help="Show settings, or change the schedule and default retention")
    p.add_argument("--cron", default=None, help="5-field cron expression; an empty string disables the schedule")
    p.add_argument("--max-backups", type=int, default=None, help="Default number of backups kept per config")
    p.add_argument("--max-age-days", type=int, default=None, help="Default maximum backup age in days")

    return parser


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def run_command(service: ConfigHistoryService, args: argparse.Namespace) -> int:
    """Dispatch one parsed command. Returns the process exit code."""
    match args.command:
        case "run":
            summary = service.trigger_backup()
            _print_json(summary)
            return 1 if summary["failed"] else 0
        case "configs":
            _print_json(service.list_configs())
        case "backups":
            _print_json(service.list_backups(args.path, args.config_id))
        case "show":
            sys.stdout.write(service.read_backup(args.path, args.config_id, args.filename))
        case "diff":
            if args.right is None:
                result = service.diff_backups(args.path, args.config_id, None, args.left)
            else:
                result = service.diff_backups(args.path, args.config_id, args.left, args.right)
            if result["type"] == "diff":
                sys.stdout.write(result["unifiedDiff"])
            else:
                _print_json(result)
        case "restore":
            result = service.restore_backup(args.path, args.config_id, args.filename)
            _print_json(result)
            return 0 if result["success"] else 1
        case "delete":
            _print_json(service.delete_backup(args.path, args.config_id, args.filename))
        case "purge":
            result = service.delete_all_backups(args.path, args.config_id)
            _print_json(result)
            return 0 if not result["remaining"] else 1
        case "settings":
            if args.cron is None and args.max_backups is None and args.max_age_days is None:
                _print_json(service.get_settings())
                return 0
            result = service.update_defaults(args.cron, args.max_backups, args.max_age_days)
            _print_json(result)
            return 0 if result["success"] else 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    config = Config(data_dir=args.data_dir)
    setup_logger(config.data_dir / "logs", level="DEBUG" if args.verbose else config.log_level)

    ctx = create_context(config)
    service = ConfigHistoryService(ctx)

    def _on_interrupt(signum: int, frame: object) -> None:
        ctx.orchestrator.shutdown()

    previous = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        return run_command(service, args)
    except ConfigHistoryError as e:
        logger.error(e.message)
        _print_json({"error": e.message, "kind": e.kind})
        return 2
    finally:
        signal.signal(signal.SIGINT, previous)
