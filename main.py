"""Console utility to inspect and drive the SafeWork Pro offline sync queue."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from core.settings import LOG_DIR, STORE_DB_PATH, SYNC
from models.operations import SYNC_ORDER
from services.connectivity import NetworkState
from services.status import offline_status_message
from services.sync_service import OfflineSyncService, create_service


LOG_PATH = LOG_DIR / "cli.log"


def _setup_logging(log_path: Path) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=str(log_path),
        filemode="a",
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__ or "")
    parser.add_argument(
        "--db",
        type=Path,
        default=STORE_DB_PATH,
        help="Path to the offline store (default: %(default)s)",
    )
    parser.add_argument(
        "--api",
        default=SYNC.api_base_url,
        help="SafeWork Pro API base URL (default: %(default)s)",
    )
    parser.add_argument(
        "--log",
        type=Path,
        default=LOG_PATH,
        help="Path to a log file (default: %(default)s)",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("status", help="Show pending and failed counts")
    commands.add_parser("failed", help="List items that exhausted their retries")
    commands.add_parser("sync", help="Run one sync pass")
    retry = commands.add_parser("retry", help="Reset and retry one item")
    retry.add_argument("queue", choices=SYNC_ORDER)
    retry.add_argument("key")
    commands.add_parser("clear", help="Empty every queue (irreversible)")
    return parser


async def _run(service: OfflineSyncService, args: argparse.Namespace) -> int:
    if args.command in ("sync", "retry"):
        service.network.set_online(await service.api.check_health())

    if args.command == "status":
        stats = service.get_stats()
        print(json.dumps(stats.to_dict(), indent=2))
        print(offline_status_message(stats))
    elif args.command == "failed":
        print(json.dumps(service.failed_items(), indent=2, ensure_ascii=False))
    elif args.command == "sync":
        report = await service.sync_now()
        if not report.ran:
            print(f"Sync skipped: {report.skipped}")
            return 1
        print(f"Synced {sum(report.synced.values())}, failed {sum(report.failed.values())}")
    elif args.command == "retry":
        await service.retry(args.queue, args.key)
        print(offline_status_message(service.get_stats()))
    elif args.command == "clear":
        service.clear_all()
        print("All queues cleared.")
    return 0


async def _main_async(args: argparse.Namespace) -> int:
    settings = replace(SYNC, api_base_url=args.api)
    service = create_service(settings, db_path=args.db, network=NetworkState(online=False))
    try:
        service.initialize()
        return await _run(service, args)
    finally:
        await service.aclose()
        await service.api.aclose()
        service.store.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    _setup_logging(args.log)
    try:
        return asyncio.run(_main_async(args))
    except Exception as exc:  # pragma: no cover
        logging.exception("Command %s failed: %s", args.command, exc)
        raise


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
