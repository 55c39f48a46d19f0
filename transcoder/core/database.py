from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from transcoder.config import Settings, get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
  pass


engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


def database_url(settings: Settings) -> str | None:
  """Build the SQLAlchemy database URL, forcing the asyncpg driver."""
  url = settings.pg_dsn
  if url and url.startswith("postgresql://"):
    url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
  return url


def get_db_engine(settings: Settings | None = None) -> AsyncEngine | None:
  global engine
  settings = settings or get_settings()
  url = database_url(settings)
  if engine is None and url:
    engine = create_async_engine(url, echo=settings.debug, future=True, connect_args={"timeout": settings.pg_connect_timeout})
  return engine


def get_session_factory(settings: Settings | None = None) -> async_sessionmaker[AsyncSession] | None:
  global SessionLocal
  if SessionLocal is None:
    db_engine = get_db_engine(settings)
    if db_engine:
      SessionLocal = async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)
  return SessionLocal


async def dispose_engine() -> None:
  """Close pooled connections; safe to call when no engine was created."""
  global engine, SessionLocal
  if engine is not None:
    await engine.dispose()
  engine = None
  SessionLocal = None


async def init_queue_schema(settings: Settings | None = None) -> None:
  """Create the queue table if it does not exist; asset tables are owned elsewhere."""
  from transcoder.schema.queue_entries import TranscodeQueueEntry

  db_engine = get_db_engine(settings)
  if db_engine is None:
    raise RuntimeError("Database not initialized (TRANSCODER_PG_DSN is missing).")
  logger.info("Ensuring table %s exists", TranscodeQueueEntry.__tablename__)
  async with db_engine.begin() as conn:
    await conn.run_sync(Base.metadata.create_all, tables=[TranscodeQueueEntry.__table__])
