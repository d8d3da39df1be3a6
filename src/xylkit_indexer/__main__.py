"""Command-line entry point.

Usage:
    xylkit-indexer init-db
    xylkit-indexer bootstrap
    xylkit-indexer sync --deployment 0x1c5d... [--force] [--limit 50] [--until-complete]
    xylkit-indexer sync --user 0xabc...
    xylkit-indexer sync --all
    xylkit-indexer status [--deployment 0x1c5d...]
    xylkit-indexer search 0xabc...
    xylkit-indexer discover 0xabc... [--batch-size 50]
    xylkit-indexer refresh-accounts [--deployment 0x1c5d...]

Every command prints its result as JSON on stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from xylkit_indexer.chain.client import ChainClientError
from xylkit_indexer.config import get_settings
from xylkit_indexer.indexer.scheduler import SyncTargetError
from xylkit_indexer.service import IndexerService

logger = logging.getLogger("xylkit_indexer")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="xylkit-indexer",
        description="Sync Drips-on-Movement protocol state into a local database",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")
    sub.add_parser("bootstrap", help="Register deployments from SYNC_KNOWN_DEPLOYMENTS")

    sync = sub.add_parser("sync", help="Run a sync batch")
    target = sync.add_mutually_exclusive_group()
    target.add_argument("--deployment", help="Deployment address to sync")
    target.add_argument("--all", action="store_true", help="Sync every known deployment")
    sync.add_argument("--user", help="Prioritize events touching this wallet's account")
    sync.add_argument("--force", action="store_true", help="Bypass the cooldown gate")
    sync.add_argument("--limit", type=int, help="Transactions to scan per batch (1-100)")
    sync.add_argument(
        "--until-complete",
        action="store_true",
        help="Keep running batches while more work is pending",
    )
    sync.add_argument("--max-rounds", type=int, default=50, help="Batch limit for --until-complete")

    status = sub.add_parser("status", help="Show sync metadata")
    status.add_argument("--deployment", help="Only show this deployment")

    search = sub.add_parser("search", help="Classify an address as deployment or user")
    search.add_argument("address")

    discover = sub.add_parser("discover", help="Scan a user's transactions for deployments")
    discover.add_argument("address")
    discover.add_argument("--batch-size", type=int, help="Transactions per batch (1-100)")

    refresh = sub.add_parser("refresh-accounts", help="Retry NFT owner lookups")
    refresh.add_argument("--deployment", help="Only refresh this deployment")

    return parser


async def _dispatch(service: IndexerService, args: argparse.Namespace) -> Any:
    if args.command == "init-db":
        await service.init_db()
        return {"initialized": True}
    if args.command == "bootstrap":
        return {"registered": await service.bootstrap()}
    if args.command == "sync":
        if args.all:
            results = await service.sync_all(force=args.force, limit=args.limit)
            return [r.to_dict() for r in results]
        if args.until_complete:
            results = await service.sync_until_complete(
                args.deployment,
                user=args.user,
                force=args.force,
                limit=args.limit,
                max_rounds=args.max_rounds,
            )
            return [r.to_dict() for r in results]
        result = await service.sync(args.deployment, user=args.user, force=args.force, limit=args.limit)
        return result.to_dict()
    if args.command == "status":
        return [s.to_dict() for s in await service.status(args.deployment)]
    if args.command == "search":
        return (await service.search(args.address)).to_dict()
    if args.command == "discover":
        return (await service.discover(args.address, args.batch_size)).to_dict()
    if args.command == "refresh-accounts":
        return {"resolved": await service.refresh_accounts(args.deployment)}
    raise ValueError(f"Unknown command: {args.command}")


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    async with IndexerService(settings) as service:
        try:
            output = await _dispatch(service, args)
        except (SyncTargetError, ValueError) as e:
            print(json.dumps({"error": str(e)}), file=sys.stderr)
            return 2
        except ChainClientError as e:
            logger.error("Chain request failed: %s", e)
            print(json.dumps({"error": f"chain unavailable: {e}"}), file=sys.stderr)
            return 1
    print(json.dumps(output, indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
