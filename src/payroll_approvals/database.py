"""Database connection and session management."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from payroll_approvals.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from payroll_approvals.audit import AuditTrail

logger = logging.getLogger(__name__)


def get_engine(url: str) -> AsyncEngine:
    """Create async database engine."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables. Used by tests and local development."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def audited_session(
    trail: AuditTrail,
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Session whose audit trail is written with the outcome of the work.

    On success the buffered records are committed with the work itself. On
    failure the work is rolled back, then denial, conflict and impersonation
    records are committed in a separate transaction.
    """
    async with factory() as session:
        try:
            yield session
            await trail.persist(session)
            await session.commit()
        except Exception:
            await session.rollback()
            await _persist_failures(factory, trail)
            raise


async def _persist_failures(
    factory: async_sessionmaker[AsyncSession],
    trail: AuditTrail,
) -> None:
    if not trail.failures():
        return
    async with factory() as session:
        try:
            await trail.persist(session, failures_only=True)
            await session.commit()
        except Exception:
            await session.rollback()
            logger.exception("Failed to persist audit records for a rolled-back request")
