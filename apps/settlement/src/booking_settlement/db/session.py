"""Async engine and session factory bound to the configured database."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from booking_settlement.core.settings import settings

engine = create_async_engine(settings.database_url, echo=settings.database_echo, future=True, pool_pre_ping=True)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

__all__ = ["async_session", "engine"]
