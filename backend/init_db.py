"""Database initialization script"""
import asyncio

from carimages.config import settings
from carimages.database import build_engine, init_db


async def main():
    """Initialize canonical database tables"""
    print("Initializing database...")
    engine = build_engine(str(settings.database_url), echo=settings.sql_echo)
    try:
        await init_db(engine)
    finally:
        await engine.dispose()
    print("Database initialized successfully!")


if __name__ == "__main__":
    asyncio.run(main())
