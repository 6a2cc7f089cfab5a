"""
DocVault Test Suite — Shared fixtures and in-memory collaborators.

Run:  pytest tests/ -v
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

import pytest

from docvault.db.source import RelationalSource, Row, RowFilter
from docvault.documents.naming import NameResolver
from docvault.engine.cache import CacheManager
from docvault.engine.config import DocVaultConfig, FetchConfig
from docvault.engine.errors import DataSourceError, StorageError
from docvault.storage.object_store import ObjectStore
from docvault.storage.signing import PresignedUrlResolver, Signer

DOCS = "employee_documents"
EMPLOYEES = "employee_table"


# ---------------------------------------------------------------------------
# Global state isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_globals():
    """Reset config and structured-log singletons between tests."""
    import docvault.engine.config as cfg_mod
    import docvault.engine.logging as log_mod

    cfg_mod._config = None
    yield
    log_mod.shutdown_logging()
    cfg_mod._config = None
    root = logging.getLogger("docvault")
    for handler in [h for h in root.handlers if getattr(h, "_docvault", False)]:
        root.removeHandler(handler)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    """Epoch-millisecond clock the test moves by hand."""

    def __init__(self, start: float = 1_700_000_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeSource(RelationalSource):
    """
    In-memory relational store with the RowFilter semantics of
    SqlAlchemySource. Records every call so tests can count page reads.
    """

    def __init__(self):
        self.tables: Dict[str, List[Row]] = {DOCS: [], EMPLOYEES: []}
        self.select_calls: List[Dict[str, Any]] = []
        self.count_calls = 0
        self.fail_select: Optional[BaseException] = None
        self.fail_select_at_offset: Optional[int] = None
        self.fail_select_table: Optional[str] = None
        self.fail_count: Optional[BaseException] = None
        self.fail_insert: Optional[BaseException] = None
        self.select_delay = 0.0
        self.select_delay_table: Optional[str] = None

    # helpers
    def add_documents(self, *rows: Row) -> None:
        self.tables[DOCS].extend(dict(r) for r in rows)

    def add_employees(self, *rows: Row) -> None:
        self.tables[EMPLOYEES].extend(dict(r) for r in rows)

    def page_reads(self, table: str = DOCS) -> int:
        return sum(1 for c in self.select_calls if c["table"] == table)

    @staticmethod
    def _matches(row: Row, f: Optional[RowFilter]) -> bool:
        if f is None:
            return True
        if f.key_prefixes is not None:
            key = row.get(f.key_column) or ""
            folded = key.casefold()
            if not any(folded.startswith(f"{p}/".casefold()) for p in f.key_prefixes):
                return False
        if f.employee_ids is not None and row.get("employee_id") not in set(f.employee_ids):
            return False
        if f.ids is not None and row.get("id") not in set(f.ids):
            return False
        if f.search and f.search_columns:
            needle = f.search.casefold()
            if not any(needle in str(row.get(c) or "").casefold() for c in f.search_columns):
                return False
        for col in f.not_null:
            if row.get(col) is None:
                return False
        return True

    async def select(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        row_filter: Optional[RowFilter] = None,
        order_by: Optional[str] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Row]:
        self.select_calls.append({"table": table, "offset": offset, "limit": limit, "filter": row_filter})
        if self.select_delay and (self.select_delay_table is None or self.select_delay_table == table):
            await asyncio.sleep(self.select_delay)
        if (
            self.fail_select is not None
            and (self.fail_select_at_offset is None or self.fail_select_at_offset == offset)
            and (self.fail_select_table is None or self.fail_select_table == table)
        ):
            raise self.fail_select
        rows = [r for r in self.tables[table] if self._matches(r, row_filter)]
        end = None if limit is None else offset + limit
        rows = rows[offset:end]
        if columns:
            rows = [{c: r.get(c) for c in columns} for r in rows]
        return [dict(r) for r in rows]

    async def count(self, table: str, row_filter: Optional[RowFilter] = None) -> int:
        self.count_calls += 1
        if self.fail_count is not None:
            raise self.fail_count
        return sum(1 for r in self.tables[table] if self._matches(r, row_filter))

    async def insert(self, table: str, values: Row) -> Row:
        if self.fail_insert is not None:
            raise self.fail_insert
        row = dict(values)
        row.setdefault("id", str(uuid.uuid4()))
        self.tables[table].append(row)
        return dict(row)

    async def delete(self, table: str, row_filter: RowFilter) -> int:
        keep = [r for r in self.tables[table] if not self._matches(r, row_filter)]
        removed = len(self.tables[table]) - len(keep)
        self.tables[table] = keep
        return removed


class FakeObjectStore(ObjectStore):
    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.fail_upload: Optional[StorageError] = None
        self.fail_delete: Optional[StorageError] = None
        self.drop_uploads = False  # accept uploads but never store them

    async def upload(self, key, data, content_type=None, metadata=None) -> str:
        if self.fail_upload is not None:
            raise self.fail_upload
        if not self.drop_uploads:
            self.objects[key] = data
        return key

    async def delete(self, key: str) -> None:
        if self.fail_delete is not None:
            raise self.fail_delete
        self.objects.pop(key, None)
        self.deleted.append(key)

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def list_by_prefix(self, prefix: str) -> List[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))

    async def presign(self, key: str, ttl_seconds: int) -> str:
        return f"https://s3.example.com/cubsdocs/{key}?X-Amz-Expires={ttl_seconds}&X-Amz-Signature=abc123"


class FakeSigner(Signer):
    def __init__(self, name: str, url: Optional[str] = None, error: Optional[BaseException] = None, delay: float = 0.0):
        self.name = name
        self.url = url
        self.error = error
        self.delay = delay
        self.calls: List[str] = []

    async def sign(self, key: str, file_name: Optional[str] = None) -> str:
        self.calls.append(key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.url or f"https://signed.example.com/{key}?Signature=xyz"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def caches(clock):
    return CacheManager(clock=clock)


@pytest.fixture
def resolver():
    return NameResolver.from_path()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def store():
    return FakeObjectStore()


@pytest.fixture
def config():
    return DocVaultConfig(fetch=FetchConfig(page_size=500, batch_delay=0.0))


@pytest.fixture
def make_doc():
    """Factory for raw employee_documents rows."""
    counter = {"n": 0}

    def _make(
        file_path: str,
        employee_id: Optional[str] = None,
        uploaded_at: Any = "2024-01-01T00:00:00Z",
        **extra: Any,
    ) -> Row:
        counter["n"] += 1
        row = {
            "id": extra.pop("id", f"doc-{counter['n']}"),
            "employee_id": employee_id,
            "file_name": file_path.rsplit("/", 1)[-1],
            "file_path": file_path,
            "uploaded_at": uploaded_at,
            "file_url": None,
        }
        row.update(extra)
        return row

    return _make


@pytest.fixture
def make_resolver(source, caches):
    """Factory for a PresignedUrlResolver over the fake source."""

    def _make(signers: Sequence[Signer], **kwargs: Any) -> PresignedUrlResolver:
        return PresignedUrlResolver(source, caches, signers, **kwargs)

    return _make


@pytest.fixture
def make_service(source, store, resolver, caches, config):
    """Factory for a DocumentFolderService wired to the fakes."""
    from docvault.documents.service import DocumentFolderService

    def _make(signers: Optional[Sequence[Signer]] = None) -> DocumentFolderService:
        chain = list(signers) if signers is not None else [FakeSigner("fake")]
        signer = PresignedUrlResolver(
            source, caches, chain, config.signing, DOCS, read_timeout=config.fetch.page_timeout
        )
        return DocumentFolderService(source, store, resolver, caches, signer, config)

    return _make


@pytest.fixture
def fake_signer():
    """The FakeSigner class: fake_signer("edge", url=...) or fake_signer("edge", error=...)."""
    return FakeSigner


@pytest.fixture
def source_down():
    return DataSourceError("connection refused", table=DOCS)
