"""Shared handle over the local SQLite cache.

The store owns one async engine bound to a single connection. Every public
operation is serialized through an ``asyncio.Lock`` so a multi-statement
transaction never interleaves with another coroutine's statements on that
connection.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Union

from sqlalchemy import insert, literal, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import Executable
from sqlalchemy.sql.dml import Insert, Update

from chat_sync.core.errors import ForeignKeyViolation, StoreError, StoreErrorKind
from chat_sync.core.settings import Settings, settings as default_settings
from chat_sync.db.session import Base, create_store_engine
from chat_sync.models import SchemaVersion
from chat_sync.utils.time import now_ms

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

Statement = Union[str, Executable]
Params = Mapping[str, Any]
Operation = Union[Statement, tuple[Statement, Params | None]]


@dataclass(frozen=True)
class ExecuteResult:
    """Outcome of a single write statement."""

    changes: int
    inserted_id: int | None = None


def _is_foreign_key_error(exc: IntegrityError) -> bool:
    return "FOREIGN KEY" in str(exc.orig).upper()


def _split(op: Operation) -> tuple[Statement, Params | None]:
    if isinstance(op, tuple):
        statement, params = op
        return statement, params
    return op, None


class LocalStore:
    """Local relational cache: schema management plus query/execute/transaction.

    Args:
        target: Database URL or an existing ``AsyncEngine``. Defaults to
            ``settings.database_url``.
        config: Settings instance used for defaults.
    """

    def __init__(
        self,
        target: str | AsyncEngine | None = None,
        *,
        config: Settings | None = None,
    ) -> None:
        cfg = config or default_settings
        if isinstance(target, AsyncEngine):
            self._engine = target
        else:
            self._engine = create_store_engine(target or cfg.database_url, echo=cfg.sql_debug)
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Create missing tables and record the schema version.

        Calling ``init`` on an initialized store is a no-op.
        """
        async with self._lock:
            if self._initialized:
                return
            try:
                async with self._engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
                    await self._ensure_version(conn)
            except SQLAlchemyError as exc:
                raise StoreError(
                    StoreErrorKind.IO_ERROR, f"Local store initialization failed: {exc}"
                ) from exc
            self._initialized = True
            logger.debug("Local store initialized at schema version %d", SCHEMA_VERSION)

    async def _ensure_version(self, conn: AsyncConnection) -> None:
        current = await conn.scalar(select(SchemaVersion.version).where(SchemaVersion.id == 1))
        if current is None:
            await conn.execute(
                insert(SchemaVersion).values(id=1, version=SCHEMA_VERSION, updated_at=now_ms())
            )
            return
        if current > SCHEMA_VERSION:
            raise StoreError(
                StoreErrorKind.IO_ERROR,
                f"Local schema version {current} is newer than supported {SCHEMA_VERSION}",
            )
        if current == SCHEMA_VERSION:
            return

        # create_all has already added any tables missing from the older file.
        logger.info("Upgrading local schema from version %d to %d", current, SCHEMA_VERSION)
        await conn.execute(
            update(SchemaVersion)
            .where(SchemaVersion.id == 1)
            .values(version=SCHEMA_VERSION, updated_at=now_ms())
        )

    async def schema_version(self) -> int:
        rows = await self.query(select(SchemaVersion.version).where(SchemaVersion.id == 1))
        return int(rows[0]["version"]) if rows else 0

    async def close(self) -> None:
        """Dispose of the engine; the store must be re-initialized before reuse."""
        async with self._lock:
            await self._engine.dispose()
            self._initialized = False

    # ------------------------------------------------------------------
    # Statement execution
    # ------------------------------------------------------------------

    def _require_init(self) -> None:
        if not self._initialized:
            raise StoreError(
                StoreErrorKind.NOT_INITIALIZED,
                "Local store not initialized. Call init() first.",
            )

    async def query(self, statement: Statement, params: Params | None = None) -> list[dict[str, Any]]:
        """Run a read statement and return its rows as dictionaries."""
        self._require_init()
        async with self._lock:
            try:
                async with self._engine.connect() as conn:
                    result = await self._run(conn, statement, params)
                    return [dict(row) for row in result.mappings()]
            except SQLAlchemyError as exc:
                raise StoreError(StoreErrorKind.IO_ERROR, f"Query failed: {exc}") from exc

    async def execute(self, statement: Statement, params: Params | None = None) -> ExecuteResult:
        """Run a single write statement in its own transaction."""
        self._require_init()
        async with self._lock:
            async with self._engine.connect() as conn:
                return (await self._write(conn, [(statement, params)]))[0]

    async def transaction(self, ops: Sequence[Operation]) -> list[ExecuteResult]:
        """Run ``ops`` atomically; any failure rolls back every op."""
        self._require_init()
        if not ops:
            return []
        async with self._lock:
            async with self._engine.connect() as conn:
                return await self._write(conn, [_split(op) for op in ops])

    async def _write(
        self,
        conn: AsyncConnection,
        ops: Sequence[tuple[Statement, Params | None]],
    ) -> list[ExecuteResult]:
        results: list[ExecuteResult] = []
        try:
            async with conn.begin():
                for statement, params in ops:
                    try:
                        result = await self._run(conn, statement, params)
                    except IntegrityError as exc:
                        violation = None
                        if _is_foreign_key_error(exc):
                            # The failed statement is undone but the transaction
                            # is still open, so earlier ops remain visible here.
                            violation = await self._diagnose(conn, statement, params)
                        raise StoreError(
                            StoreErrorKind.CONSTRAINT_VIOLATION,
                            f"Constraint violation: {exc.orig}",
                            violation=violation,
                        ) from exc
                    inserted = result.lastrowid if isinstance(statement, Insert) else None
                    results.append(ExecuteResult(changes=max(result.rowcount, 0), inserted_id=inserted))
        except SQLAlchemyError as exc:
            raise StoreError(StoreErrorKind.IO_ERROR, f"Write failed: {exc}") from exc
        return results

    @staticmethod
    async def _run(conn: AsyncConnection, statement: Statement, params: Params | None) -> Any:
        if isinstance(statement, str):
            return await conn.execute(text(statement), dict(params or {}))
        if params:
            return await conn.execute(statement, dict(params))
        return await conn.execute(statement)

    @staticmethod
    async def _diagnose(
        conn: AsyncConnection,
        statement: Statement,
        params: Params | None,
    ) -> ForeignKeyViolation | None:
        """Name the missing parent row for a failed Core insert/update."""
        if not isinstance(statement, (Insert, Update)):
            return None

        table = statement.table
        values = dict(statement.compile(dialect=conn.dialect).params)
        if params:
            values.update(params)

        for fk in sorted(table.foreign_keys, key=lambda key: key.parent.name):
            value = values.get(fk.parent.name)
            if value is None:
                continue
            referred = fk.column
            found = await conn.scalar(
                select(literal(1)).select_from(referred.table).where(referred == value).limit(1)
            )
            if found is None:
                return ForeignKeyViolation(
                    table=table.name,
                    column=fk.parent.name,
                    referred_table=referred.table.name,
                    value=value,
                )
        return None
