#!/usr/bin/env python3
"""
Run the retention sweep once, outside the scheduler.

Deletes synced events, touches and popup interactions older than
--days (RETENTION_DAYS by default). Unsynced rows are never removed.

Usage:
    python scripts/cleanup_old_records.py --days 30
"""
import argparse

from sqlmodel import Session

from hub_connector.core.config import settings
from hub_connector.db import engine
from hub_connector.services.queue_storage import cleanup_old_records, unsynced_counts


def main():
    parser = argparse.ArgumentParser(description="Delete old synced queue rows")
    parser.add_argument("--days", type=int, default=settings.RETENTION_DAYS)
    args = parser.parse_args()

    with Session(engine) as session:
        deleted = cleanup_old_records(session, args.days)
        pending = unsynced_counts(session)

    print(f"Deleted {deleted} synced records older than {args.days} days")
    print(f"Still pending sync: {sum(pending.values())} ({pending})")


if __name__ == "__main__":
    main()
