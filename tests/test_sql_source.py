"""Integration tests for docvault.db.source — SqlAlchemySource against a SQLite file."""

from datetime import datetime, timezone

import pytest

from docvault.db.source import RowFilter, SqlAlchemySource, escape_like
from docvault.documents.fetcher import RowFetcher, ScopeFilter
from docvault.engine.config import FetchConfig
from docvault.engine.errors import DataSourceError

DOCS = "employee_documents"
EMPLOYEES = "employee_table"


@pytest.fixture
def sql_source(tmp_path):
    source = SqlAlchemySource.from_url(f"sqlite:///{tmp_path / 'docvault.db'}")
    source.create_all()
    yield source
    source.dispose()


async def _insert_doc(source, path, employee_id=None, uploaded_at=None, **extra):
    values = {
        "employee_id": employee_id,
        "file_name": path.rsplit("/", 1)[-1],
        "file_path": path,
        "uploaded_at": uploaded_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    values.update(extra)
    return await source.insert(DOCS, values)


class TestEscapeLike:
    def test_underscore_and_percent(self):
        assert escape_like("GOLDEN_CUBS") == "GOLDEN\\_CUBS"
        assert escape_like("100%") == "100\\%"

    def test_backslash_first(self):
        assert escape_like("a\\_b") == "a\\\\\\_b"


class TestRowFilter:
    def test_empty(self):
        assert RowFilter().is_empty()
        assert not RowFilter(ids=["x"]).is_empty()
        assert not RowFilter(key_prefixes=[]).is_empty()


class TestSqlAlchemySource:
    @pytest.mark.asyncio
    async def test_insert_applies_defaults(self, sql_source):
        row = await _insert_doc(sql_source, "CUBS/E1/a.pdf", "E1")
        assert len(row["id"]) == 36
        assert row["is_active"] is True
        assert row["file_path"] == "CUBS/E1/a.pdf"

    @pytest.mark.asyncio
    async def test_count_and_select(self, sql_source):
        for i in range(3):
            await _insert_doc(sql_source, f"CUBS/E{i}/a.pdf", f"E{i}")
        assert await sql_source.count(DOCS) == 3
        rows = await sql_source.select(DOCS, columns=["id", "file_path"], limit=2)
        assert len(rows) == 2
        assert set(rows[0]) == {"id", "file_path"}

    @pytest.mark.asyncio
    async def test_prefix_filter_matches_literally(self, sql_source):
        await _insert_doc(sql_source, "GOLDEN_CUBS/E1/a.pdf")
        await _insert_doc(sql_source, "GOLDENXCUBS/E2/b.pdf")
        await _insert_doc(sql_source, "GOLDEN CUBS/E3/c.pdf")

        rows = await sql_source.select(DOCS, row_filter=RowFilter(key_prefixes=["GOLDEN_CUBS"]))
        assert [r["file_path"] for r in rows] == ["GOLDEN_CUBS/E1/a.pdf"]

        both = RowFilter(key_prefixes=["GOLDEN_CUBS", "GOLDEN CUBS"])
        assert await sql_source.count(DOCS, both) == 2

    @pytest.mark.asyncio
    async def test_prefix_filter_ignores_case(self, sql_source):
        await _insert_doc(sql_source, "GOLDEN_CUBS/E1/a.pdf")
        await _insert_doc(sql_source, "Golden_Cubs/E2/b.pdf")
        await _insert_doc(sql_source, "Golden_CubsX/E3/c.pdf")

        rows = await sql_source.select(DOCS, row_filter=RowFilter(key_prefixes=["GOLDEN_CUBS"]))
        assert sorted(r["file_path"] for r in rows) == ["GOLDEN_CUBS/E1/a.pdf", "Golden_Cubs/E2/b.pdf"]

    @pytest.mark.asyncio
    async def test_prefix_needs_separator(self, sql_source):
        await _insert_doc(sql_source, "CUBS/E1/a.pdf")
        await _insert_doc(sql_source, "CUBS_CONTRACTING/E2/b.pdf")
        assert await sql_source.count(DOCS, RowFilter(key_prefixes=["CUBS"])) == 1

    @pytest.mark.asyncio
    async def test_empty_prefix_list_matches_nothing(self, sql_source):
        await _insert_doc(sql_source, "CUBS/E1/a.pdf")
        assert await sql_source.count(DOCS, RowFilter(key_prefixes=[])) == 0

    @pytest.mark.asyncio
    async def test_order_and_offset(self, sql_source):
        for day in (1, 3, 2):
            await _insert_doc(sql_source, f"CUBS/E{day}/a.pdf", f"E{day}",
                              uploaded_at=datetime(2024, 1, day, tzinfo=timezone.utc))
        rows = await sql_source.select(DOCS, order_by="-uploaded_at")
        assert [r["employee_id"] for r in rows] == ["E3", "E2", "E1"]
        page = await sql_source.select(DOCS, order_by="-uploaded_at", offset=1, limit=1)
        assert [r["employee_id"] for r in page] == ["E2"]

    @pytest.mark.asyncio
    async def test_search_is_case_insensitive(self, sql_source):
        await sql_source.insert(EMPLOYEES, {"employee_id": "E1", "name": "Ali Hassan", "company_name": "CUBS"})
        await sql_source.insert(EMPLOYEES, {"employee_id": "E2", "name": "Bilal", "company_name": "GOLDEN CUBS"})
        f = RowFilter(search="hASS", search_columns=["name", "company_name"])
        rows = await sql_source.select(EMPLOYEES, row_filter=f)
        assert [r["employee_id"] for r in rows] == ["E1"]

    @pytest.mark.asyncio
    async def test_delete(self, sql_source):
        row = await _insert_doc(sql_source, "CUBS/E1/a.pdf")
        await _insert_doc(sql_source, "CUBS/E2/b.pdf")
        assert await sql_source.delete(DOCS, RowFilter(ids=[row["id"]])) == 1
        assert await sql_source.count(DOCS) == 1

    @pytest.mark.asyncio
    async def test_delete_requires_filter(self, sql_source):
        with pytest.raises(DataSourceError, match="without a filter"):
            await sql_source.delete(DOCS, RowFilter())

    @pytest.mark.asyncio
    async def test_unknown_table(self, sql_source):
        with pytest.raises(DataSourceError):
            await sql_source.count("nope")

    @pytest.mark.asyncio
    async def test_driver_errors_translated(self, sql_source):
        await sql_source.insert(EMPLOYEES, {"employee_id": "E1", "name": "A"})
        with pytest.raises(DataSourceError) as exc_info:
            await sql_source.insert(EMPLOYEES, {"employee_id": "E1", "name": "B"})
        assert exc_info.value.table == EMPLOYEES
        assert exc_info.value.operation == "insert"

    @pytest.mark.asyncio
    async def test_fetcher_over_sql(self, sql_source):
        for i in range(25):
            await _insert_doc(sql_source, f"GOLDEN_CUBS/E{i}/a.pdf", f"E{i}")
        await _insert_doc(sql_source, "CUBS/C1/a.pdf", "C1")

        fetcher = RowFetcher(sql_source, FetchConfig(page_size=10, batch_delay=0))
        rows = await fetcher.fetch_rows(ScopeFilter.company(["GOLDEN_CUBS"]))

        assert len(rows) == 25
        assert len({r.id for r in rows}) == 25
        assert all(r.uploaded_at.tzinfo is not None for r in rows)
