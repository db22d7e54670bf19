#!/usr/bin/env python3
"""Report guests that have not been seen for a number of days.

Lists every guest whose last visit is older than the cutoff. With --execute
each of them also gets the "stale" flag so the admin console can filter on
it. Guests are never deleted.

Usage:
    python scripts/report_stale_guests.py --days 90 --dry-run   # List only
    python scripts/report_stale_guests.py --days 90 --execute   # List and flag
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta

# Allow running from project root
sys.path.insert(0, ".")

from guestwatch.config import get_settings
from guestwatch.database import build_engine, build_session_factory
from guestwatch.services.guest_store import utcnow
from guestwatch.services.moderation import GuestModerationService

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

settings = get_settings()


async def report(days: int, dry_run: bool) -> None:
    """Main report routine."""
    engine = build_engine(settings)
    async_session = build_session_factory(engine)
    cutoff = utcnow() - timedelta(days=days)

    async with async_session() as db:
        service = GuestModerationService(db)
        guests = await service.stale_guests(cutoff)
        logger.info(f"Found {len(guests)} guests not seen since {cutoff:%Y-%m-%d}")

        for guest in guests:
            logger.info(
                f"  {guest.id}  fingerprint={guest.fingerprint}  status={guest.status}  "
                f"posts={guest.post_count}  last_seen={guest.last_seen_at}"
            )

        flagged = 0
        if not dry_run and guests:
            flagged = await service.mark_stale(guests)
            logger.info("Changes committed.")

    mode = "DRY RUN" if dry_run else "EXECUTED"
    logger.info(f"\n=== Stale guest report {mode} ===")
    logger.info(f"  Stale guests:   {len(guests)}")
    if not dry_run:
        logger.info(f"  Flagged stale:  {flagged}")

    await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Report and flag stale guests")
    parser.add_argument("--days", type=int, default=90, help="Days since last visit")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--dry-run", action="store_true", help="List stale guests only")
    group.add_argument("--execute", action="store_true", help="Flag stale guests")
    args = parser.parse_args()

    if args.days < 1:
        parser.error("--days must be at least 1")

    asyncio.run(report(days=args.days, dry_run=args.dry_run))


if __name__ == "__main__":
    main()
