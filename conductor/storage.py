"""Key-value persistence for whole collections (read-entire / write-entire)."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Protocol

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import Settings
from .errors import SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .models import Base, KeyValueEntry


class KeyValueStore(Protocol):
    async def load(self, key: str) -> Any | None: ...

    async def save(self, key: str, value: Any) -> None: ...


class InMemoryStore:
    """Process-local store; values are JSON round-tripped like a real backend."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self._data[key] = json.dumps(value)

    async def load(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def save(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)


class DatabaseStore:
    """SQLAlchemy-backed store; one ``kv_entries`` row per key."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.engine: AsyncEngine = create_async_engine(url, echo=echo, pool_pre_ping=True)
        self._session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> DatabaseStore:
        return cls(settings.async_database_url)

    async def init_db(self) -> None:
        """Create all tables (for development/testing)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def schema_ready(self) -> bool:
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1 FROM kv_entries LIMIT 1"))
        except SchemaNotInitializedError:
            return False
        return True

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Async context manager for database sessions."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                await session.rollback()
                if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                    raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
                raise

    async def load(self, key: str) -> Any | None:
        async with self.session() as session:
            result = await session.execute(select(KeyValueEntry).where(KeyValueEntry.key == key))
            entry = result.scalar_one_or_none()
            return entry.value if entry else None

    async def save(self, key: str, value: Any) -> None:
        async with self.session() as session:
            result = await session.execute(select(KeyValueEntry).where(KeyValueEntry.key == key))
            entry = result.scalar_one_or_none()
            if entry:
                entry.value = value
            else:
                session.add(KeyValueEntry(key=key, value=value))
