"""
Rebuild CLI tool for the polls projection.

The projection is a disposable cache of the relay stream. This tool
clears it so the next consumer start replays the relay, either from a
given cursor or from now.

Usage:
    polls-rebuild --db-path <path> (--from-cursor <time_us> | --from-now) [options]

Invariants:
    - The consumer must be stopped while the tool runs
    - Rebuild is idempotent (can be re-run safely)

How to change safely:
    - Never drop tables here; the consumer expects the schema to exist
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass

from ..apply.projection_store import ProjectionStore
from ..relay.base import RelayCursor

logger = logging.getLogger(__name__)


@dataclass
class RebuildResult:
    """Result of a rebuild.

    Attributes:
        polls_removed: Poll rows deleted
        votes_removed: Vote rows deleted
        cursor: Cursor the consumer will resume from (None = now)
        dry_run: Whether changes were skipped
    """

    polls_removed: int
    votes_removed: int
    cursor: str | None
    dry_run: bool = False


async def rebuild(
    store: ProjectionStore,
    consumer: str,
    from_cursor: RelayCursor | None = None,
    dry_run: bool = False,
) -> RebuildResult:
    """Clear the projection and seed the consumer cursor.

    Args:
        store: Projection store
        consumer: Consumer name whose cursor to seed
        from_cursor: Replay start; None resumes from now
        dry_run: Report what would be removed without changing anything

    Returns:
        RebuildResult
    """
    await store.initialize()
    stats = await store.get_stats()

    if dry_run:
        logger.info("Dry run, projection left untouched", extra=stats)
        return RebuildResult(
            polls_removed=stats["polls"],
            votes_removed=stats["votes"],
            cursor=str(from_cursor) if from_cursor else None,
            dry_run=True,
        )

    await store.reset()
    if from_cursor is not None:
        await store.save_cursor(consumer, str(from_cursor))
    else:
        logger.warning(
            "Projection cleared without a replay cursor; history before now will not be backfilled",
            extra={"consumer": consumer},
        )

    logger.info(
        "Projection cleared",
        extra={"consumer": consumer, "cursor": str(from_cursor) if from_cursor else None, **stats},
    )
    return RebuildResult(
        polls_removed=stats["polls"],
        votes_removed=stats["votes"],
        cursor=str(from_cursor) if from_cursor else None,
    )


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the rebuild tool."""
    parser = argparse.ArgumentParser(
        description="Clear the polls projection so the consumer replays the relay"
    )
    parser.add_argument("--db-path", required=True, help="SQLite projection database")
    parser.add_argument("--consumer", default="polls-ingester", help="Consumer name")
    start = parser.add_mutually_exclusive_group()
    start.add_argument(
        "--from-cursor",
        type=RelayCursor.parse,
        help="Relay cursor (microseconds) to replay from",
    )
    start.add_argument(
        "--from-now",
        action="store_true",
        help="Resume from now without backfilling history",
    )
    parser.add_argument("--dry-run", action="store_true", help="Don't make changes")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)
    if not args.dry_run and args.from_cursor is None and not args.from_now:
        parser.error("one of --from-cursor or --from-now is required (or use --dry-run)")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    store = ProjectionStore(args.db_path)
    result = asyncio.run(
        rebuild(store, args.consumer, from_cursor=args.from_cursor, dry_run=args.dry_run)
    )

    prefix = "Would remove" if result.dry_run else "Removed"
    print(f"{prefix} {result.polls_removed} polls and {result.votes_removed} votes")
    print(f"  Consumer: {args.consumer}")
    print(f"  Resume from: {result.cursor or 'now'}")
    sys.exit(0)


if __name__ == "__main__":
    main()
