from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any

from baseline_engine.engine import (
    get_baseline_snapshot,
    get_findings,
    reset_baseline,
    submit_batch,
)
from baseline_engine.errors import (
    BaselineEngineError,
    MalformedInputError,
    ResetNotConfirmedError,
    UnknownHostError,
)
from baseline_engine.ledger import sweep_ledger
from baseline_engine.settings import resolve_settings
from baseline_engine.storage import init_db

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INVALID = 2
EXIT_RETRYABLE = 3
EXIT_FAILED = 4


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def cmd_import(args: argparse.Namespace, settings: dict[str, Any]) -> int:
    with open(args.payload, "r", encoding="utf-8") as handle:
        payload = json.load(handle)
    result = submit_batch(settings["paths"]["db_path"], payload, settings=settings)
    _print(result.to_dict())
    return EXIT_OK


def cmd_snapshot(args: argparse.Namespace, settings: dict[str, Any]) -> int:
    snapshot = get_baseline_snapshot(
        settings["paths"]["db_path"],
        package_id=args.package_id,
        system_id=args.system_id,
        settings=settings,
    )
    _print(snapshot.to_dict())
    return EXIT_OK


def cmd_findings(args: argparse.Namespace, settings: dict[str, Any]) -> int:
    page = get_findings(
        settings["paths"]["db_path"],
        package_id=args.package_id,
        system_id=args.system_id,
        severity=args.severity,
        state=args.state,
        benchmark=args.benchmark,
        kind=args.kind,
        limit=args.limit,
        offset=args.offset,
        settings=settings,
    )
    _print(page)
    return EXIT_OK


def cmd_reset(args: argparse.Namespace, settings: dict[str, Any]) -> int:
    summary = reset_baseline(
        settings["paths"]["db_path"],
        package_id=args.package_id,
        confirm=args.confirm,
        settings=settings,
    )
    _print(summary)
    return EXIT_OK


def cmd_sweep(args: argparse.Namespace, settings: dict[str, Any]) -> int:
    _print(sweep_ledger(settings["paths"]["db_path"], settings, dry_run=args.dry_run))
    return EXIT_OK


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scan ingestion and baseline engine")
    parser.add_argument("--settings", default=os.getenv("BASELINE_SETTINGS", "/app/config/settings.yaml"), help="Path to settings YAML")
    parser.add_argument("--db-path", help="Override the SQLite database path")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    importer = subparsers.add_parser("import", help="Submit one scan report batch (JSON file)")
    importer.add_argument("payload", help="Path to the batch JSON")
    importer.set_defaults(handler=cmd_import)

    snapshot = subparsers.add_parser("snapshot", help="Show the baseline of a package or system")
    scope = snapshot.add_mutually_exclusive_group(required=True)
    scope.add_argument("--package-id", type=int)
    scope.add_argument("--system-id", type=int)
    snapshot.set_defaults(handler=cmd_snapshot)

    findings = subparsers.add_parser("findings", help="List findings")
    findings.add_argument("--package-id", type=int)
    findings.add_argument("--system-id", type=int)
    findings.add_argument("--severity")
    findings.add_argument("--state")
    findings.add_argument("--benchmark")
    findings.add_argument("--kind", choices=["vulnerability", "compliance"])
    findings.add_argument("--limit", type=int)
    findings.add_argument("--offset", type=int, default=0)
    findings.set_defaults(handler=cmd_findings)

    reset = subparsers.add_parser("reset-baseline", help="Discard findings and snapshots for a scope")
    reset.add_argument("--package-id", type=int, help="Package to reset (all packages when omitted)")
    reset.add_argument("--confirm", required=True, help="Repeat the scope: package:<id> or all")
    reset.set_defaults(handler=cmd_reset)

    sweep = subparsers.add_parser("sweep", help="Expire stale pending imports and prune the ledger")
    sweep.add_argument("--dry-run", action="store_true")
    sweep.set_defaults(handler=cmd_sweep)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    settings = resolve_settings(args.settings)
    if args.db_path:
        settings["paths"]["db_path"] = args.db_path
    init_db(settings["paths"]["db_path"])

    try:
        return args.handler(args, settings)
    except (MalformedInputError, UnknownHostError, ResetNotConfirmedError) as exc:
        LOGGER.error("Invalid request: %s", exc)
        return EXIT_INVALID
    except (OSError, json.JSONDecodeError) as exc:
        LOGGER.error("Cannot read input: %s", exc)
        return EXIT_INVALID
    except BaselineEngineError as exc:
        LOGGER.error("Batch failed: %s", exc)
        return EXIT_RETRYABLE if exc.retryable else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
