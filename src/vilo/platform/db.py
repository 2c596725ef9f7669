"""
SQLAlchemy 2.0 Database Configuration

Declarative base, shared mixins and async session management.
"""

from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote_plus

from sqlalchemy import DateTime, String
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from vilo.platform.settings import settings

# ==========================================
# Database URLs from settings
# ==========================================


def get_database_url() -> str:
    """Get the async database URL from settings."""
    if settings.database.url:
        url = settings.database.url
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite://"):
            return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url

    # In development, use SQLite if PostgreSQL is not configured
    if settings.is_development and not settings.database.password:
        return "sqlite+aiosqlite:///./vilo_automation.sqlite"

    username = quote_plus(settings.database.username)
    password = quote_plus(settings.database.password) if settings.database.password else ""
    host = settings.database.host
    port = settings.database.port
    database = settings.database.database

    return f"postgresql+asyncpg://{username}:{password}@{host}:{port}/{database}"


# ==========================================
# Column types
# ==========================================


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on storage, so values read back are re-tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    """Default clock used by services and column defaults."""
    return datetime.now(UTC)


# ==========================================
# SQLAlchemy 2.0 Declarative Base
# ==========================================


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.0 declarative mapping."""

    pass


# ==========================================
# Common Mixins
# ==========================================


class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


class StrictTenantMixin:
    """Adds tenant_id for strict multi-tenancy (required tenant)."""

    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)


# ==========================================
# Engine and Session Management
# ==========================================

_async_engine: AsyncEngine | None = None


def get_async_engine() -> AsyncEngine:
    """Get or create the asynchronous engine."""
    global _async_engine
    if _async_engine is None:
        url = get_database_url()
        options: dict[str, Any] = {"echo": settings.database.echo}
        if not url.startswith("sqlite"):
            options.update(
                pool_size=settings.database.pool_size,
                max_overflow=settings.database.max_overflow,
                pool_timeout=settings.database.pool_timeout,
                pool_recycle=settings.database.pool_recycle,
                pool_pre_ping=settings.database.pool_pre_ping,
            )
        _async_engine = create_async_engine(url, **options)
    return _async_engine


AsyncSessionLocal = async_sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=get_async_engine(),
    class_=AsyncSession,
    expire_on_commit=False,
)


# ==========================================
# Database Initialization
# ==========================================


async def create_all_tables_async() -> None:
    """Create all tables in the database asynchronously."""
    # Register every mapped table on Base.metadata
    import vilo.platform.subscriptions.models  # noqa: F401

    engine = get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


__all__ = [
    "Base",
    "TimestampMixin",
    "StrictTenantMixin",
    "UTCDateTime",
    "utcnow",
    "get_database_url",
    "get_async_engine",
    "AsyncSessionLocal",
    "create_all_tables_async",
]
