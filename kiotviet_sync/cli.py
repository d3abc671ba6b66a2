"""Run KiotViet catalog syncs from the command line and print JSON results."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Sequence

import structlog
from dotenv import load_dotenv

from kiotviet_sync.config import SyncSettings, parse_category_ids, parse_category_names
from kiotviet_sync.errors import FATAL_ERRORS
from kiotviet_sync.logging_setup import configure_logging
from kiotviet_sync.orchestrator import CatalogSyncOrchestrator, build_engine

logger = structlog.get_logger(__name__)

COMMANDS = ("full", "products", "categories", "trademarks", "readiness", "check")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync the KiotViet catalog into local storage")
    parser.add_argument("command", choices=COMMANDS, help="Sync stage or diagnostic to run")
    parser.add_argument(
        "--since",
        help="Only fetch records modified on or after this ISO-8601 date",
    )
    parser.add_argument(
        "--categories",
        help="Comma-separated root category names (defaults to KIOTVIET_PRODUCT_CATEGORIES)",
    )
    parser.add_argument(
        "--category-ids",
        help="Comma-separated root category ids; replaces the configured names unless --categories is given",
    )
    parser.add_argument(
        "--incremental",
        action="store_true",
        help="Use the last successful product sync time as --since",
    )
    parser.add_argument(
        "--store",
        choices=["memory", "cdf"],
        default="memory",
        help="Where synced records are written",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")
    return parser.parse_args(argv)


async def run_command(engine: CatalogSyncOrchestrator, args: argparse.Namespace) -> Dict[str, Any]:
    categories = parse_category_names(args.categories) if args.categories else None
    category_ids = parse_category_ids(args.category_ids)

    if args.command == "full":
        full = await engine.full_sync(since=args.since, category_names=categories, category_ids=category_ids)
        return full.to_dict()
    if args.command == "products":
        if args.incremental:
            result = await engine.sync_incremental_products(
                category_names=categories, category_ids=category_ids
            )
        else:
            result = await engine.sync_products(
                since=args.since, category_names=categories, category_ids=category_ids
            )
        return result.to_dict()
    if args.command == "categories":
        return (await engine.sync_categories()).to_dict()
    if args.command == "trademarks":
        return (await engine.sync_trademarks()).to_dict()
    if args.command == "readiness":
        return (await engine.check_readiness()).to_dict()
    return await engine.check_connection()


async def _run(args: argparse.Namespace) -> Dict[str, Any]:
    async with build_engine(SyncSettings(), store=args.store) as engine:
        return await run_command(engine, args)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level, json_logs=args.json_logs)

    env_path = Path(".env")
    load_dotenv(dotenv_path=env_path if env_path.exists() else None)

    try:
        output = asyncio.run(_run(args))
    except FATAL_ERRORS as exc:
        logger.error("sync_aborted", error=str(exc), kind=exc.category.value)
        print(json.dumps({"success": False, "error": str(exc), "kind": exc.category.value}, indent=2))
        return 2
    except ValueError as exc:
        logger.error("invalid_arguments", error=str(exc))
        print(json.dumps({"success": False, "error": str(exc), "kind": "validation"}, indent=2))
        return 2

    print(json.dumps(output, indent=2, default=str))
    return 0 if output.get("success", True) else 1


if __name__ == "__main__":
    sys.exit(main())
