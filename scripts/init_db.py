#!/usr/bin/env python3
"""
Initialize database schemas - Postgres (Supabase) and/or embedded SQLite.
"""

import argparse
import sys
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from loguru import logger
from infrastructure.log import setup_logging
from infrastructure.db.sql_client import create_tables
from infrastructure.db.sqlite_client import create_sqlite_tables


def main():
    parser = argparse.ArgumentParser(description="Create data-layer tables")
    parser.add_argument("--postgres", action="store_true", help="create the Supabase Postgres tables")
    parser.add_argument("--sqlite", action="store_true", help="create the embedded SQLite tables")
    args = parser.parse_args()

    setup_logging()
    targets = [name for name in ("postgres", "sqlite") if getattr(args, name)] or ["sqlite"]
    try:
        if "postgres" in targets:
            create_tables()
        if "sqlite" in targets:
            create_sqlite_tables()
        return 0
    except Exception as e:
        logger.error("Failed to initialize schema: {}", e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
