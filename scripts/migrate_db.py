#!/usr/bin/env python3
"""
Database Migration — create the allocation tables from the SQLAlchemy models.

Usage:
    python scripts/migrate_db.py             # create missing tables
    python scripts/migrate_db.py --check     # report only, no changes
    python scripts/migrate_db.py --url sqlite:///./allocation.db
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _redact(url) -> str:
    url = str(url)
    return url.split("@")[-1] if "@" in url else url


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


async def run_migration(check_only: bool = False, url: str = None) -> int:
    from config.settings import load_settings
    settings = load_settings()

    from database.models import Base
    from database.session import create_engine_for

    engine = create_engine_for(url or settings.database.url)
    dialect = engine.dialect.name
    defined = set(Base.metadata.tables.keys())

    print(f"Database: {dialect}")
    print(f"URL: {_redact(engine.url)}")
    print(f"Tables defined: {', '.join(sorted(defined))}")

    try:
        if not check_only:
            print("Running database migration...")
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        async with engine.connect() as conn:
            existing = await _existing_tables(conn, dialect)
    finally:
        await engine.dispose()

    print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")
    missing = defined - set(existing)
    if missing:
        print(f"Tables MISSING: {', '.join(sorted(missing))}")
        print("Run without --check to create them.")
        return 1
    print("All tables exist.")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Allocation engine database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default=None, help="Database URL (defaults to settings)")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, url=args.url)))


if __name__ == "__main__":
    main()
