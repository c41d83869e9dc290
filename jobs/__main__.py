"""Command-line entrypoint for batch jobs."""

from __future__ import annotations

import argparse
import os
from typing import Iterable

from jobs.config import TARGET_LOCATIONS, TargetConfig, iter_targets
from jobs.sync_listings import DEFAULT_SYNC_LIMIT
from jobs.sync_listings import main as run_sync_listings
from jobs.sync_market import main as run_sync
from pipelines.model import PropertyFilters


def _format_target(target: TargetConfig) -> str:
    zip_code = target.zip_code or "(any)"
    return f"{target.key}: city='{target.city}' state={target.state} zip={zip_code}"


def _resolve_targets_from_cli(keys: Iterable[str] | None) -> tuple[TargetConfig, ...]:
    if not keys:
        return tuple()
    targets = tuple(iter_targets(keys))
    unknown = set(keys) - {t.key for t in targets}
    if unknown:
        raise SystemExit(f"Unknown target keys: {', '.join(sorted(unknown))}")
    return targets


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Market data sync job runner")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser(
        "sync", help="Refresh market snapshots for the configured locations and persist to DuckDB"
    )
    sync_parser.add_argument(
        "--targets",
        help="Comma-separated list of target keys to sync (defaults to all configured)",
    )
    sync_parser.add_argument(
        "--concurrency",
        type=int,
        help="Maximum number of targets fetched at once (defaults to SYNC_MAX_CONCURRENCY or 1)",
    )
    sync_parser.add_argument(
        "--log-level",
        help="Override LOG_LEVEL for this invocation (e.g. DEBUG, INFO)",
    )

    listings_parser = subparsers.add_parser(
        "sync-listings", help="Pull MLS listings into the local properties table"
    )
    listings_parser.add_argument("--city", help="Only listings in this city")
    listings_parser.add_argument("--state", help="Only listings in this state")
    listings_parser.add_argument("--zip", dest="zip_code", help="Only listings in this zip code")
    listings_parser.add_argument(
        "--limit",
        type=int,
        default=DEFAULT_SYNC_LIMIT,
        help=f"Maximum number of listings to pull (default {DEFAULT_SYNC_LIMIT})",
    )
    listings_parser.add_argument(
        "--log-level",
        help="Override LOG_LEVEL for this invocation (e.g. DEBUG, INFO)",
    )

    subparsers.add_parser("list-targets", help="Show configured sync targets")

    args = parser.parse_args(argv)

    if args.command == "list-targets":
        for target in TARGET_LOCATIONS:
            print(_format_target(target))
        return 0

    if args.command == "sync":
        targets_arg = args.targets.split(",") if args.targets else None
        targets_arg = [item.strip() for item in targets_arg or [] if item.strip()]
        targets = _resolve_targets_from_cli(targets_arg)
        if args.concurrency is not None and args.concurrency < 1:
            parser.error("--concurrency must be at least 1")
        if args.log_level:
            os.environ["LOG_LEVEL"] = args.log_level
        return run_sync(targets or None, concurrency=args.concurrency)

    if args.command == "sync-listings":
        if not 1 <= args.limit <= 500:
            parser.error("--limit must be between 1 and 500")
        if args.log_level:
            os.environ["LOG_LEVEL"] = args.log_level
        filters = PropertyFilters(
            city=args.city, state=args.state, zip_code=args.zip_code, limit=args.limit
        )
        return run_sync_listings(filters)

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
