import asyncio
import logging

from config.settings import settings
from core.db import Base, build_session_maker
from core.logging import configure_logging
from models import db_models  # noqa: F401 ensure models are imported so tables are registered

logger = logging.getLogger(__name__)


async def main():
    """
    One-time script to create all tables in the configured database.
    Development shortcut; environments with data use `alembic upgrade head`.
    """
    db_url = settings.DATABASE_URL
    if not db_url or db_url == "disabled":
        raise RuntimeError(f"DATABASE_URL is not configured correctly: {db_url}")

    engine, _ = build_session_maker(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    logger.info("Database schema created/updated successfully.")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(main())
