"""
DocVault Relational Source — the query interface the fetcher and service use.

RelationalSource is the async contract (select / count / insert / delete with
a RowFilter). SqlAlchemySource implements it with SQLAlchemy Core against any
engine URL: PostgreSQL via psycopg2 in production, SQLite in tests. Blocking
calls run in a worker thread via asyncio.to_thread so the event loop stays
single-threaded.

Every SQLAlchemy failure is translated to DataSourceError here; nothing above
this module sees driver exceptions.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Sequence

from sqlalchemy import MetaData, Table, and_, create_engine, false, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from docvault.db.tables import build_tables
from docvault.engine.errors import DataSourceError

logger = logging.getLogger("docvault.db.source")

Row = Dict[str, Any]


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so a prefix such as GOLDEN_CUBS matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def read_with_timeout(
    call: Awaitable[Any],
    timeout: float,
    table: str,
    operation: str,
    offset: Optional[int] = None,
) -> Any:
    """
    Await one relational read under its own timeout. Timeouts and any other
    failure surface as DataSourceError so callers (and their cache entries)
    always settle.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise DataSourceError(
            f"Read on {table} timed out after {timeout}s",
            operation=operation,
            table=table,
            offset=offset,
            timed_out=True,
        ) from e
    except DataSourceError:
        raise
    except Exception as e:
        raise DataSourceError(
            f"Read on {table} failed: {e}",
            operation=operation,
            table=table,
            offset=offset,
        ) from e


@dataclass
class RowFilter:
    """
    Conjunction of optional predicates.

    key_prefixes:   key_column starts with "{prefix}/" for any prefix (OR), ignoring case
    employee_ids:   employee_id IN (...)
    ids:            id IN (...)
    search:         ILIKE %search% over any of search_columns (OR)
    not_null:       columns that must be non-null
    """
    key_prefixes: Optional[Sequence[str]] = None
    employee_ids: Optional[Sequence[str]] = None
    ids: Optional[Sequence[str]] = None
    search: Optional[str] = None
    search_columns: Sequence[str] = field(default_factory=tuple)
    not_null: Sequence[str] = field(default_factory=tuple)
    key_column: str = "file_path"

    def is_empty(self) -> bool:
        return not (
            self.key_prefixes is not None
            or self.employee_ids is not None
            or self.ids is not None
            or self.search
            or self.not_null
        )


class RelationalSource(abc.ABC):
    """Async relational query interface."""

    @abc.abstractmethod
    async def select(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        row_filter: Optional[RowFilter] = None,
        order_by: Optional[str] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Row]:
        """
        Read rows. order_by is a column name, "-column" for descending.
        offset/limit bound the range read.
        """

    @abc.abstractmethod
    async def count(self, table: str, row_filter: Optional[RowFilter] = None) -> int:
        """Exact number of rows matching row_filter."""

    @abc.abstractmethod
    async def insert(self, table: str, values: Row) -> Row:
        """Insert one row and return it as stored (defaults applied)."""

    @abc.abstractmethod
    async def delete(self, table: str, row_filter: RowFilter) -> int:
        """Delete matching rows; returns the number removed."""


class SqlAlchemySource(RelationalSource):
    """
    SQLAlchemy Core adapter.

    Usage:
        source = SqlAlchemySource.from_url("postgresql://...")
        rows = await source.select("employee_documents", order_by="-uploaded_at", limit=500)
    """

    def __init__(self, engine: Engine, tables: Dict[str, Table], metadata: Optional[MetaData] = None):
        self._engine = engine
        self._tables = tables
        self._metadata = metadata

    @classmethod
    def from_url(
        cls,
        url: str,
        documents_table: str = "employee_documents",
        employees_table: str = "employee_table",
        pool_size: int = 5,
        pool_pre_ping: bool = True,
    ) -> "SqlAlchemySource":
        kwargs: Dict[str, Any] = {"pool_pre_ping": pool_pre_ping}
        if not url.startswith("sqlite"):
            kwargs["pool_size"] = pool_size
        engine = create_engine(url, **kwargs)
        metadata = MetaData()
        tables = build_tables(metadata, documents_table, employees_table)
        return cls(engine, tables, metadata)

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_all(self) -> None:
        """Create the tables (dev bootstrap and tests only)."""
        if self._metadata is None:
            raise DataSourceError("No metadata bound to this source", operation="create_all")
        self._metadata.create_all(self._engine)

    def dispose(self) -> None:
        self._engine.dispose()

    # ── Query building ──

    def _table(self, name: str) -> Table:
        try:
            return self._tables[name]
        except KeyError:
            raise DataSourceError(
                f"Unknown table '{name}'. Available: {sorted(self._tables)}",
                table=name,
            ) from None

    def _where(self, table: Table, row_filter: Optional[RowFilter]):
        if row_filter is None or row_filter.is_empty():
            return None
        clauses = []
        if row_filter.key_prefixes is not None:
            key_col = table.c[row_filter.key_column]
            clauses.append(or_(*[
                key_col.ilike(f"{escape_like(prefix)}/%", escape="\\")
                for prefix in row_filter.key_prefixes
            ]) if row_filter.key_prefixes else false())
        if row_filter.employee_ids is not None:
            clauses.append(table.c.employee_id.in_(list(row_filter.employee_ids)))
        if row_filter.ids is not None:
            clauses.append(table.c.id.in_(list(row_filter.ids)))
        if row_filter.search and row_filter.search_columns:
            pattern = f"%{escape_like(row_filter.search)}%"
            clauses.append(or_(*[
                table.c[col].ilike(pattern, escape="\\") for col in row_filter.search_columns
            ]))
        for col in row_filter.not_null:
            clauses.append(table.c[col].isnot(None))
        return and_(*clauses)

    # ── RelationalSource ──

    async def select(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        row_filter: Optional[RowFilter] = None,
        order_by: Optional[str] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Row]:
        t = self._table(table)
        stmt = select(*[t.c[c] for c in columns]) if columns else select(t)
        where = self._where(t, row_filter)
        if where is not None:
            stmt = stmt.where(where)
        if order_by:
            col = t.c[order_by.lstrip("-")]
            stmt = stmt.order_by(col.desc() if order_by.startswith("-") else col.asc())
        # Stable paging across equal sort keys
        stmt = stmt.order_by(*[pk.asc() for pk in t.primary_key.columns])
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)

        def run() -> List[Row]:
            with self._engine.connect() as conn:
                return [dict(r._mapping) for r in conn.execute(stmt)]

        return await self._call("select", table, run, offset=offset)

    async def count(self, table: str, row_filter: Optional[RowFilter] = None) -> int:
        t = self._table(table)
        stmt = select(func.count()).select_from(t)
        where = self._where(t, row_filter)
        if where is not None:
            stmt = stmt.where(where)

        def run() -> int:
            with self._engine.connect() as conn:
                return int(conn.execute(stmt).scalar_one())

        return await self._call("count", table, run)

    async def insert(self, table: str, values: Row) -> Row:
        t = self._table(table)
        pk_cols = list(t.primary_key.columns)

        def run() -> Row:
            with self._engine.begin() as conn:
                result = conn.execute(t.insert().values(**values))
                pk_values = result.inserted_primary_key
                where = and_(*[col == val for col, val in zip(pk_cols, pk_values)])
                return dict(conn.execute(select(t).where(where)).one()._mapping)

        return await self._call("insert", table, run)

    async def delete(self, table: str, row_filter: RowFilter) -> int:
        t = self._table(table)
        where = self._where(t, row_filter)
        if where is None:
            raise DataSourceError(
                "Refusing to delete without a filter", operation="delete", table=table
            )

        def run() -> int:
            with self._engine.begin() as conn:
                return conn.execute(t.delete().where(where)).rowcount

        return await self._call("delete", table, run)

    async def _call(self, operation: str, table: str, fn, **context: Any):
        try:
            return await asyncio.to_thread(fn)
        except SQLAlchemyError as e:
            logger.error(f"{operation} on {table} failed: {e}")
            raise DataSourceError(
                f"{operation} on {table} failed: {e}",
                operation=operation,
                table=table,
                **context,
            ) from e
