#!/usr/bin/env python3
"""
Database Migration — Create tables for the sql store backend.

Usage:
    # Create line_users and queue_snapshots:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check

    # Record a called number for a counter (manual feed / smoke test):
    python scripts/migrate_db.py --snapshot 1:1234
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _existing_tables(sync_conn) -> list[str]:
    from sqlalchemy import inspect
    return inspect(sync_conn).get_table_names()


async def run_migration(check_only: bool = False, snapshot: str = ""):
    from config.settings import load_settings
    load_settings()

    from database.session import get_engine, close_db
    from database.models import Base

    engine = get_engine()
    print(f"Database: {engine.dialect.name}")
    print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")

    if check_only:
        async with engine.connect() as conn:
            existing = await conn.run_sync(_existing_tables)
        print(f"Tables existing: {', '.join(existing) or '(none)'}")
        missing = set(Base.metadata.tables.keys()) - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return

    print("Running database migration...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        tables = await conn.run_sync(_existing_tables)
    print(f"Tables created/verified: {', '.join(tables)}")

    if snapshot:
        from database.store import SqlStore
        counter, number = snapshot.split(":", 1)
        await SqlStore().record_snapshot(int(counter), int(number))
        print(f"Recorded snapshot: counter {counter} → {number}")

    await close_db()
    print("Migration complete. ✓")


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--snapshot", default="", metavar="COUNTER:NUMBER",
                        help="Also record a latest-called snapshot")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check, snapshot=args.snapshot))


if __name__ == "__main__":
    main()
