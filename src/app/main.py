"""Command-line entry point for the CRM sync engine.

Usage:
    python -m src.app.main cycle
    python -m src.app.main pull --entity counterparty
    python -m src.app.main pull --dry-run
    python -m src.app.main drain --limit 100 --unlock
    python -m src.app.main stats
    python -m src.app.main requeue 42
    python -m src.app.main serve

SIGINT / SIGTERM request a cooperative stop: the entry in flight finishes,
then the run ends.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from contextlib import suppress

import structlog

from src.app.config import get_settings
from src.app.core.database import close_db, get_session_factory, init_db
from src.app.core.logging import configure_structlog
from src.app.core.monitoring import start_metrics_server
from src.app.sync.engine import SyncEngine
from src.app.sync.inbound.pullers import DEFAULT_PULLERS
from src.app.sync.remote.client import RemoteApiClient
from src.app.sync.scheduler import SyncScheduler
from src.app.sync.schemas import EntityType, ItemResult, PullStats

logger = structlog.get_logger(__name__)


def _install_stop_handlers(engine: SyncEngine) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # add_signal_handler is unavailable on some platforms
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, engine.context.request_stop)


def _print_preview(entity_type: EntityType, stats: PullStats) -> None:
    print(
        f"{entity_type.value}: {stats.created} to create, {stats.updated} to update, "
        f"{stats.deleted} to delete, {stats.skipped} skipped, {stats.errors} errors"
    )
    for result in stats.previews:
        print(f"  {_describe(result)}")
        for name, change in result.changes.items():
            print(f"      {name}: {change.old!r} -> {change.new!r}")


def _describe(result: ItemResult) -> str:
    line = f"{result.action.value:8s} remote={result.remote_id}"
    if result.local_id is not None:
        line += f" local={result.local_id}"
    if result.reason:
        line += f" ({result.reason})"
    return line


async def main_async(args: argparse.Namespace) -> int:
    settings = get_settings()
    configure_structlog()
    await init_db()

    client = RemoteApiClient.from_settings(settings)
    engine = SyncEngine(get_session_factory(), client, settings)
    _install_stop_handlers(engine)
    logger.info("sync.cli_command", command=args.command)

    try:
        if args.command == "cycle":
            result = await engine.run_cycle(limit=args.limit)
            print(result.model_dump_json(indent=2))

        elif args.command == "pull":
            if args.entity:
                results = {
                    EntityType(args.entity): await engine.pull(
                        EntityType(args.entity), dry_run=args.dry_run
                    )
                }
            else:
                results = await engine.pull_all(dry_run=args.dry_run)
            for entity_type, stats in results.items():
                if args.dry_run:
                    _print_preview(entity_type, stats)
                else:
                    print(f"{entity_type.value:24s} {stats.model_dump_json()}")

        elif args.command == "drain":
            if args.unlock:
                reclaimed = await engine.reclaim_stale()
                print(f"Unlocked {reclaimed} stale entries")
            stats = await engine.drain_queue(limit=args.limit)
            print(stats.model_dump_json(indent=2))

        elif args.command == "stats":
            stats = await engine.queue_stats()
            for name, count in stats.model_dump().items():
                print(f"  {name:12s} {count}")

        elif args.command == "requeue":
            if not await engine.requeue(args.entry_id):
                print(f"Entry {args.entry_id} not found or currently locked")
                return 1
            print(f"Entry {args.entry_id} requeued")

        elif args.command == "serve":
            start_metrics_server(settings.METRICS_PORT)
            scheduler = SyncScheduler(engine, interval_seconds=settings.SYNC_INTERVAL_SECONDS)
            if not scheduler.start():
                return 1
            try:
                while not await engine.context.wait_or_stop(3600):
                    pass
            finally:
                scheduler.stop()
    finally:
        await client.aclose()
        await close_db()

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bidirectional CRM sync engine")
    sub = parser.add_subparsers(dest="command", required=True)

    cycle = sub.add_parser("cycle", help="Reclaim stale locks, pull all types, drain the queue")
    cycle.add_argument("--limit", type=int, default=None, help="Maximum entries to push")

    pull = sub.add_parser("pull", help="Pull remote changes")
    pull.add_argument(
        "--entity",
        choices=[puller.entity_type.value for puller in DEFAULT_PULLERS],
        help="Single entity type to pull (default: all pullable types)",
    )
    pull.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be created, updated or deleted without writing",
    )

    drain = sub.add_parser("drain", help="Push pending local changes")
    drain.add_argument("--limit", type=int, default=None, help="Maximum entries to push")
    drain.add_argument("--unlock", action="store_true", help="Reclaim stale locks first")

    sub.add_parser("stats", help="Show change queue statistics")

    requeue = sub.add_parser("requeue", help="Reset an entry to pending with a fresh budget")
    requeue.add_argument("entry_id", type=int)

    sub.add_parser("serve", help="Run the sync cycle on a fixed interval")
    return parser


def main() -> None:
    args = build_parser().parse_args()
    sys.exit(asyncio.run(main_async(args)))


if __name__ == "__main__":
    main()
