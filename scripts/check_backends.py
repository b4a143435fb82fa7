#!/usr/bin/env python3
"""
Check connectivity of every configured backend.
"""

import os
import sys
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from loguru import logger
from infrastructure.config import dump, should_fallback_to_backup
from infrastructure.log import setup_logging
from infrastructure.observability import flush
from infrastructure.db import check_postgres, check_redis_availability, check_sqlite, check_supabase


def main():
    setup_logging()
    dump()

    results = {"sqlite": check_sqlite()}

    if os.getenv("REDIS_URL"):
        availability = check_redis_availability()
        logger.info(availability["message"])
        results["redis"] = availability["redis_available"]
        results["vector"] = availability["vector_available"]

    if os.getenv("SUPABASE_DB_URL"):
        results["postgres"] = check_postgres()
    if should_fallback_to_backup():
        results["supabase_rest"] = check_supabase()
    if os.getenv("LANGFUSE_PUBLIC_KEY"):
        results["langfuse"] = flush()

    for name, ok in results.items():
        logger.info("{:<14} {}", name, "OK" if ok else "FAILED")

    if all(results.values()):
        logger.success("All checks passed!")
        return 0
    logger.error("Some checks failed. See errors above.")
    return 1


if __name__ == '__main__':
    sys.exit(main())
