"""
DocVault Row Fetcher — reads the complete row set for a scope past the
relational store's single-request row cap.

Pipeline (per fetch):
    1. count() the matching rows
    2. Range reads of fetch.page_size rows, ORDER BY uploaded_at DESC
    3. Stop on a short page, once the count is reached, or at fetch.max_batches
    4. Validate rows into DocumentRow

Any page (or count) error or timeout aborts the whole fetch with
DataSourceError; partially read pages are discarded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from docvault.db.source import RelationalSource, Row, RowFilter, read_with_timeout
from docvault.documents.models import DocumentRow
from docvault.engine.config import FetchConfig
from docvault.engine.errors import DataSourceError
from docvault.engine.logging import log, log_fetch

logger = logging.getLogger("docvault.documents.fetcher")


@dataclass(frozen=True)
class ScopeFilter:
    """Which rows a fetch covers: every row, one company's prefixes, or given employees."""
    kind: str
    prefixes: Tuple[str, ...] = ()
    employee_ids: Tuple[str, ...] = ()

    @classmethod
    def all(cls) -> "ScopeFilter":
        return cls("all")

    @classmethod
    def company(cls, prefixes: Sequence[str]) -> "ScopeFilter":
        return cls("company", prefixes=tuple(sorted(set(prefixes))))

    @classmethod
    def employee(cls, employee_id: str) -> "ScopeFilter":
        return cls("employee", employee_ids=(employee_id,))

    @classmethod
    def employees(cls, employee_ids: Sequence[str]) -> "ScopeFilter":
        return cls("employee", employee_ids=tuple(sorted(set(employee_ids))))

    def to_row_filter(self) -> Optional[RowFilter]:
        if self.kind == "company":
            return RowFilter(key_prefixes=list(self.prefixes))
        if self.kind == "employee":
            return RowFilter(employee_ids=list(self.employee_ids))
        return None

    def describe(self) -> str:
        if self.kind == "company":
            return f"company[{','.join(self.prefixes)}]"
        if self.kind == "employee":
            return f"employee[{','.join(self.employee_ids)}]"
        return "all"


class RowFetcher:
    """
    Usage:
        fetcher = RowFetcher(source, config.fetch)
        rows = await fetcher.fetch_rows(ScopeFilter.company(["GOLDEN_CUBS", "GOLDEN CUBS"]))
    """

    def __init__(
        self,
        source: RelationalSource,
        config: Optional[FetchConfig] = None,
        table: str = "employee_documents",
        columns: Optional[Sequence[str]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._source = source
        self._config = config or FetchConfig()
        self._table = table
        self._columns = list(columns) if columns else None
        self._sleep = sleep

    async def fetch_rows(self, scope_filter: Optional[ScopeFilter] = None) -> List[DocumentRow]:
        scope_filter = scope_filter or ScopeFilter.all()
        scope = scope_filter.describe()
        start = time.perf_counter()

        try:
            raw, pages, truncated = await self._read_pages(scope_filter.to_row_filter())
        except DataSourceError as e:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(f"Row fetch for {scope} failed: {e.message}")
            log(log_fetch(scope, 0, 0, duration_ms, success=False, error=e.message))
            raise

        rows = self._validate(raw, scope)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"Fetched {len(rows)} rows for {scope} in {pages} pages ({duration_ms:.1f}ms)")
        log(log_fetch(scope, len(rows), pages, duration_ms, truncated=truncated))
        return rows

    async def _read_pages(self, row_filter: Optional[RowFilter]) -> Tuple[List[Row], int, bool]:
        page_size = self._config.page_size
        total = await self._bounded(self._source.count(self._table, row_filter), offset=None)

        raw: List[Row] = []
        pages = 0
        offset = 0
        while offset < total:
            if pages >= self._config.max_batches:
                logger.warning(
                    f"Row fetch on {self._table} stopped at the {self._config.max_batches}-page cap "
                    f"({len(raw)} of {total} rows)"
                )
                return raw, pages, True
            if pages >= 2 and self._config.batch_delay > 0:
                await self._sleep(self._config.batch_delay)

            page = await self._bounded(
                self._source.select(
                    self._table,
                    columns=self._columns,
                    row_filter=row_filter,
                    order_by="-uploaded_at",
                    offset=offset,
                    limit=page_size,
                ),
                offset=offset,
            )
            pages += 1
            raw.extend(page)
            if len(page) < page_size:
                break
            offset += page_size
        return raw, pages, False

    async def _bounded(self, call: Awaitable[Any], offset: Optional[int]) -> Any:
        return await read_with_timeout(
            call, self._config.page_timeout, self._table, "fetch_rows", offset=offset
        )

    @staticmethod
    def _validate(raw: List[Row], scope: str) -> List[DocumentRow]:
        rows: List[DocumentRow] = []
        skipped = 0
        for item in raw:
            try:
                rows.append(DocumentRow.model_validate(item))
            except ValidationError as e:
                skipped += 1
                logger.debug(f"Skipping malformed row {item.get('id')!r}: {e.error_count()} errors")
        if skipped:
            logger.warning(f"Skipped {skipped} malformed rows while fetching {scope}")
        return rows
