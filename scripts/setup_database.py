"""
Database initialization script.
Creates the giveaway system tables and reports which optional features the schema supports.
"""

import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from giveaway_system import config
from giveaway_system.database import detect_capabilities, setup_database, verify_schema
from utils.db_context import create_db_engine
from utils.logging_config import setup_service_logging


def main():
    setup_service_logging(config.LOG_LEVEL, config.LOG_FILE)

    if not config.DATABASE_URL:
        print("❌ DATABASE_URL not set. Please set it in your .env file")
        return 1

    url = config.DATABASE_URL
    print(f"Connecting to database: {url.split('@')[-1] if '@' in url else url}")
    engine = create_db_engine(url)

    if not setup_database(engine):
        return 1

    print("\n=== Verifying schema ===\n")
    missing = [table for table, ok in verify_schema(engine).items() if not ok]
    for table in missing:
        print(f"   ✗ {table}")
    if missing:
        print("⚠️ Some tables are missing")
        return 1
    print("✅ All tables present")

    capabilities = detect_capabilities(engine)
    for name, enabled in vars(capabilities).items():
        print(f"   {'✓' if enabled else '✗'} {name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
