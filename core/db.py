"""
Async database engine and session management.

Purpose:
- Create SQLAlchemy async engine (aiomysql in production, aiosqlite in tests)
- Provide async session factory for dependency injection into services
- Provide Base declarative class for ORM models

Production notes:
- Use connection pooling with appropriate pool_size and max_overflow
- Every service receives its AsyncSession explicitly; nothing reaches for a global session
"""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from config.settings import settings
import logging
from typing import AsyncGenerator, Optional

logger = logging.getLogger(__name__)

Base = declarative_base()

# When DATABASE_URL is "disabled", do not create an engine at all.
engine = None
async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def build_session_maker(url: str, echo: bool = False):
	"""Create an (engine, session maker) pair for the given async URL."""
	new_engine = create_async_engine(url, echo=echo, future=True)
	maker = async_sessionmaker(new_engine, expire_on_commit=False, class_=AsyncSession)
	return new_engine, maker


if settings.DATABASE_URL and settings.DATABASE_URL != "disabled":
	engine, async_session_maker = build_session_maker(settings.DATABASE_URL, echo=settings.DEBUG)
	logger.info("Async DB engine created for %s", engine.url.render_as_string(hide_password=True))
else:
	logger.warning("DATABASE_URL is 'disabled' - DB engine will not be created.")


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
	"""
	Yield an AsyncSession for one request. The engine must be configured;
	billing state has no in-memory fallback.
	"""
	if async_session_maker is None:
		raise RuntimeError("Database is not configured (DATABASE_URL=disabled)")

	async with async_session_maker() as session:
		try:
			yield session
		finally:
			await session.close()
