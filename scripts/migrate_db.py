#!/usr/bin/env python3
"""
Database Migration — Create the outreach engine tables from SQLAlchemy models.

Usage:
    python scripts/migrate_db.py                    # create missing tables
    python scripts/migrate_db.py --check            # report only, no changes
    python scripts/migrate_db.py --url sqlite:///./dev.db
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text

    if dialect == "postgresql":
        query = "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
    elif dialect == "mysql":
        query = "SHOW TABLES"
    else:  # sqlite
        query = "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    result = await conn.execute(text(query))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False, url: str = None):
    from config.settings import load_settings
    load_settings()

    from database.session import get_engine, close_db
    from database.models import Base

    engine = get_engine(url)
    dialect = engine.dialect.name
    defined = set(Base.metadata.tables.keys())

    print(f"Database: {dialect}")
    print(f"Tables defined: {', '.join(sorted(defined))}")

    if check_only:
        async with engine.connect() as conn:
            existing = await _existing_tables(conn, dialect)
        print(f"Tables existing: {', '.join(existing) or '(none)'}")
        missing = defined - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist.")
        await close_db()
        return

    print("Running database migration...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with engine.connect() as conn:
        existing = await _existing_tables(conn, dialect)
    print(f"Tables created/verified: {', '.join(t for t in existing if t in defined)}")

    await close_db()
    print("Migration complete.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create outreach engine tables")
    parser.add_argument("--check", action="store_true", help="Only report table status")
    parser.add_argument("--url", default=None, help="Database URL (defaults to settings)")
    args = parser.parse_args()
    asyncio.run(run_migration(check_only=args.check, url=args.url))
