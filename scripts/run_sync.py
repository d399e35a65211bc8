#!/usr/bin/env python3
"""
Pull and apply counterpart changes for every active connection.

Meant to run on a schedule (launchd or cron). Each connection is synced
independently; one failing counterpart doesn't stop the others.

Usage:
    python scripts/run_sync.py [--user USER] [--connection ID] [--backfill]

Options:
    --user USER       Sync only this user's connections
    --connection ID   Sync only this connection (requires --user)
    --backfill        Queue historical data of linked people before pulling
"""
# Load environment variables from .env FIRST, before any other imports
# This is critical for launchd/cron which don't have access to shell environment
from pathlib import Path
from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent / ".env")

import argparse
import asyncio
import logging
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from api.services.connection_store import get_connection_store
from api.services.sync_errors import SyncError
from api.services.sync_service import get_sync_service

logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


async def run_all(user_id: str = None, connection_id: str = None, backfill: bool = False) -> dict:
    """
    Run one sync pass.

    Returns:
        {"synced": n, "failed": n, "pulled": n, "applied": n, "conflicts": n}
    """
    service = get_sync_service()
    store = get_connection_store()

    if connection_id:
        connections = [store.require_owned(user_id, connection_id)]
    elif user_id:
        connections = store.list_for_user(user_id, active_only=True)
    else:
        connections = store.list_active()

    totals = {"synced": 0, "failed": 0, "pulled": 0, "applied": 0, "conflicts": 0}
    for connection in connections:
        label = f"{connection.remote_app} ({connection.id[:8]}, user {connection.user_id})"
        try:
            if backfill:
                queued = service.backfill(connection.user_id, connection.id)
                logger.info(f"{label}: backfill queued {queued['queued_people']} people, "
                            f"{queued['queued_moments']} moments")
            result = await service.run(connection.user_id, connection.id)
        except SyncError as e:
            logger.error(f"{label}: sync failed: {e.message}")
            totals["failed"] += 1
            continue

        totals["synced"] += 1
        totals["pulled"] += result["pulled"]
        totals["applied"] += result["applied"]
        totals["conflicts"] += result["conflicts"]

    logger.info(
        f"Sync complete: {totals['synced']} connection(s) synced, {totals['failed']} failed, "
        f"{totals['pulled']} pulled, {totals['applied']} applied, {totals['conflicts']} conflicts"
    )
    return totals


def main():
    parser = argparse.ArgumentParser(description="Pull and apply counterpart changes")
    parser.add_argument("--user", help="Sync only this user's connections")
    parser.add_argument("--connection", help="Sync only this connection (requires --user)")
    parser.add_argument("--backfill", action="store_true", help="Queue historical data first")
    args = parser.parse_args()

    if args.connection and not args.user:
        parser.error("--connection requires --user")

    try:
        result = asyncio.run(run_all(args.user, args.connection, args.backfill))
    except SyncError as e:
        logger.error(e.message)
        return 1

    return 1 if result["failed"] else 0


if __name__ == "__main__":
    sys.exit(main() or 0)
