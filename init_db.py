"""Initialize the database schema for the form intake backend.

Creates every table the API writes to or reads from. The API also does this
on startup unless DB_CREATE_TABLES_ON_STARTUP=false; run this script when
startup creation is disabled.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from intake.config import settings
from intake.db import create_engine_from_settings, create_tables
from intake.models import Base


async def init_database():
    """Create all database tables."""
    print(f"Initializing database: {settings.db.url.split('@')[-1]}")
    print("Creating tables...")

    engine = create_engine_from_settings(settings.db)
    try:
        await create_tables(engine)
    finally:
        await engine.dispose()

    print("\n✅ Database initialization complete!")
    print(f"Tables: {', '.join(Base.metadata.tables.keys())}")


async def main():
    """Main entry point."""
    try:
        await init_database()
    except Exception as e:
        print(f"\n❌ Error initializing database: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
