from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from sqlalchemy import Engine, MetaData, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from fieldsync.core.errors import StorageError, StoreClosedError
from fieldsync.db.migrations import MigrationStep, apply_migrations

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreDefinition:
    name: str
    metadata: MetaData
    migrations: tuple[MigrationStep, ...]


def _configure_sqlite_pragma(engine: Engine) -> None:
    if not engine.url.drivername.startswith("sqlite"):
        return

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA temp_store=MEMORY;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()


class StoreDatabase:
    """One durable store: its own SQLite file, schema and write lock.

    Writes are serialized through ``transaction()`` so callers never need their
    own locking. Reads use ``session()`` and may interleave with writes.
    """

    def __init__(self, definition: StoreDefinition, database_url: str):
        self._definition = definition
        self._database_url = database_url
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._write_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._definition.name

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise StoreClosedError(f"Store is not initialized: {self.name}")
        return self._engine

    async def init(self) -> list[int]:
        if self._engine is not None:
            return []

        engine = create_async_engine(self._database_url, future=True)
        _configure_sqlite_pragma(engine.sync_engine)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(self._definition.metadata.create_all)
                applied = await conn.run_sync(apply_migrations, self._definition.migrations)
            if engine.url.drivername.startswith("sqlite"):
                async with engine.connect() as conn:
                    await conn.execute(text("PRAGMA optimize;"))
                    await conn.commit()
        except (SQLAlchemyError, OSError) as exc:
            await engine.dispose()
            raise StorageError(f"Failed to open store {self.name}: {exc}") from exc

        self._engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine,
            autoflush=False,
            expire_on_commit=False,
            class_=AsyncSession,
        )
        if applied:
            logger.info("Store %s migrated to versions %s", self.name, applied)
        return applied

    async def dispose(self) -> None:
        engine = self._engine
        self._engine = None
        self._session_factory = None
        if engine is not None:
            await engine.dispose()

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise StoreClosedError(f"Store is not initialized: {self.name}")
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        factory = self._factory()
        try:
            async with factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            raise StorageError(f"Read failed on store {self.name}: {exc}") from exc

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        factory = self._factory()
        async with self._write_lock:
            try:
                async with factory() as session:
                    async with session.begin():
                        yield session
            except (SQLAlchemyError, OSError) as exc:
                raise StorageError(f"Write failed on store {self.name}: {exc}") from exc
