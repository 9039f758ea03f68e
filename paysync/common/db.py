"""Database bootstrap helpers."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from paysync.common.config import settings


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONPayload = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def build_session_factory(dsn: str | None = None) -> sessionmaker:
    """Create the process-wide engine and its session factory."""

    engine = create_engine(dsn or settings.postgres_dsn, pool_pre_ping=True)
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
