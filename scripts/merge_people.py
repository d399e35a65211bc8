#!/usr/bin/env python3
"""
Merge duplicate person records.

Moves every moment, participation and sync link of the secondary person
onto the primary, then soft-deletes the secondary. Every merge is logged
and can be undone exactly.

Usage:
    python scripts/merge_people.py --primary <id> --secondary <id> [--execute]
    python scripts/merge_people.py --undo <merge_log_id>
    python scripts/merge_people.py --list-merges [--include-undone]
"""
from pathlib import Path
from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent / ".env")

import sys
import logging
import argparse

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.services.merge_engine import get_merge_engine
from api.services.person_links import get_person_link_store
from api.services.sync_errors import NotFound, SyncError
from api.services.timeline_store import get_timeline_store
from config.settings import settings

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


def preview_merge(user_id: str, primary_id: str, secondary_id: str) -> dict:
    """Report what a merge would move without changing anything."""
    timeline = get_timeline_store()
    people = {}
    for role, person_id in (("primary", primary_id), ("secondary", secondary_id)):
        person = timeline.get_person(person_id)
        if not person or person.user_id != user_id or not person.is_active:
            raise NotFound(f"{role.capitalize()} person not found: {person_id}")
        people[role] = person
    primary, secondary = people["primary"], people["secondary"]

    moments = timeline.list_moments_for_people(user_id, [secondary.id])
    participations = set(timeline.list_participations(secondary.id))
    shared = participations & set(timeline.list_participations(primary.id))
    links = get_person_link_store().links_for_person(secondary.id)

    logger.info(f"Primary:   {primary.name} ({primary.id})")
    logger.info(f"Secondary: {secondary.name} ({secondary.id})")
    logger.info(f"  moments to move: {len(moments)}")
    logger.info(f"  participations to move: {len(participations - shared)}")
    logger.info(f"  duplicate participations to drop: {len(shared)}")
    logger.info(f"  sync links: {len(links)}")
    return {
        "moments": len(moments),
        "participants": len(participations - shared),
        "duplicates": len(shared),
        "links": len(links),
    }


def main():
    parser = argparse.ArgumentParser(description='Merge duplicate person records')
    parser.add_argument('--primary', help='ID of the person to keep')
    parser.add_argument('--secondary', help='ID of the person to merge into primary')
    parser.add_argument('--execute', action='store_true', help='Actually apply changes')
    parser.add_argument('--undo', metavar='MERGE_LOG_ID', help='Undo a previous merge')
    parser.add_argument('--list-merges', action='store_true', help='Show merge history')
    parser.add_argument('--include-undone', action='store_true', help='With --list-merges, show undone merges too')
    parser.add_argument('--user', default=settings.default_user_id, help='Owner of the people')
    args = parser.parse_args()

    engine = get_merge_engine()

    try:
        if args.list_merges:
            merges = engine.list_merges(args.user, include_undone=args.include_undone)
            print(f"\n{len(merges)} merge(s):\n")
            for m in merges:
                log = m.to_dict()
                undone = f" (undone {log['undone_at']})" if log['undone_at'] else ""
                print(f"  {log['id']}  {log['merged_name']} -> {log['primary_name']}  "
                      f"moments={log['moments_moved']} participants={log['participants_moved']}"
                      f"  {log['created_at']}{undone}")
            return 0

        if args.undo:
            result = engine.undo(args.user, args.undo)
            logger.info(f"Restored person {result['restored_person_id']}: "
                        f"{result['moments_restored']} moments, "
                        f"{result['participants_restored']} participants, "
                        f"{result['links_restored']} links")
            return 0

        if not args.primary or not args.secondary:
            parser.print_help()
            print("\nExamples:")
            print("  python scripts/merge_people.py --primary abc123 --secondary def456")
            print("  python scripts/merge_people.py --primary abc123 --secondary def456 --execute")
            print("  python scripts/merge_people.py --list-merges")
            return 0

        if not args.execute:
            preview_merge(args.user, args.primary, args.secondary)
            logger.info("\nDRY RUN - no changes made. Use --execute to apply.")
            return 0

        merge_log = engine.merge(args.user, args.primary, args.secondary)
        logger.info(f"Merged. Undo with: python scripts/merge_people.py --undo {merge_log.id}")
    except SyncError as e:
        logger.error(e.message)
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main() or 0)
