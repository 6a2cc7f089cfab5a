"""
DocVault Document Folder Service — the facade callers use.

Wires the Row Fetcher, Name Resolver, Folder Aggregator, Cache Layer and
Presigned URL Resolver together, and owns the mutating operations
(upload with compensation, delete) plus scoped cache invalidation.

Cache keys:
    companies     "all"
    employees     company display name
    company_rows  company display name
    documents     employee_id
    presigned     document id
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, Hashable, List, Optional, Sequence

from docvault.db.source import RelationalSource, RowFilter, SqlAlchemySource, read_with_timeout
from docvault.documents.aggregator import FolderAggregator
from docvault.documents.fetcher import RowFetcher, ScopeFilter
from docvault.documents.models import (
    DocumentRow,
    DocumentScope,
    DocumentScopeKind,
    EmployeeRow,
    Folder,
    FolderKind,
    FolderListing,
    UploadRequest,
)
from docvault.documents.naming import NameResolver
from docvault.engine.cache import CacheManager, CacheScope
from docvault.engine.config import DocVaultConfig
from docvault.engine.errors import (
    AggregationFallback,
    DataSourceError,
    DocumentNotFoundError,
    StorageError,
)
from docvault.engine.logging import (
    PerformanceTracker,
    log,
    log_cache_event,
    log_document_event,
    log_storage_operation,
)
from docvault.storage.object_store import ObjectStore, S3ObjectStore
from docvault.storage.signing import PresignedUrlResolver, build_signers

logger = logging.getLogger("docvault.documents.service")

ALL_COMPANIES = "all"
SEARCH_CANDIDATES = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentFolderService:
    """
    Usage:
        service = DocumentFolderService(source, store, resolver, caches, signer, config)
        listing = await service.list_company_folders()
        folders = await service.list_employee_folders("GOLDEN CUBS")
    """

    def __init__(
        self,
        source: RelationalSource,
        store: ObjectStore,
        resolver: NameResolver,
        caches: CacheManager,
        signer: PresignedUrlResolver,
        config: Optional[DocVaultConfig] = None,
        fetcher: Optional[RowFetcher] = None,
        aggregator: Optional[FolderAggregator] = None,
        tracker: Optional[PerformanceTracker] = None,
        owns_source: bool = False,
    ):
        self._config = config or DocVaultConfig()
        self._source = source
        self._owns_source = owns_source
        self._store = store
        self._resolver = resolver
        self._caches = caches
        self._signer = signer
        self._documents_table = self._config.database.documents_table
        self._employees_table = self._config.database.employees_table
        self._fetcher = fetcher or RowFetcher(source, self._config.fetch, self._documents_table)
        self._aggregator = aggregator or FolderAggregator(resolver)
        self._tracker = tracker or PerformanceTracker(self._config.logging.slow_operation_ms)

    @classmethod
    def from_config(cls, config: DocVaultConfig) -> "DocumentFolderService":
        """Production wiring: SQLAlchemy source, S3 store, configured signer chain."""
        db = config.database
        source = SqlAlchemySource.from_url(
            db.url,
            documents_table=db.documents_table,
            employees_table=db.employees_table,
            pool_size=db.pool_size,
            pool_pre_ping=db.pool_pre_ping,
        )
        store = S3ObjectStore.from_config(config.storage)
        resolver = NameResolver.from_path(config.naming.tables_path)
        caches = CacheManager(config.cache)
        signer = PresignedUrlResolver(
            source,
            caches,
            build_signers(config.signing, store),
            config.signing,
            db.documents_table,
            read_timeout=config.fetch.page_timeout,
        )
        return cls(source, store, resolver, caches, signer, config, owns_source=True)

    @property
    def config(self) -> DocVaultConfig:
        return self._config

    @property
    def source(self) -> RelationalSource:
        return self._source

    @property
    def store(self) -> ObjectStore:
        return self._store

    @property
    def caches(self) -> CacheManager:
        return self._caches

    @property
    def resolver(self) -> NameResolver:
        return self._resolver

    @property
    def tracker(self) -> PerformanceTracker:
        return self._tracker

    # -----------------------------------------------------------------------
    # Folder listings
    # -----------------------------------------------------------------------

    async def list_company_folders(self) -> FolderListing:
        """
        All company folders. When the document table cannot be read, the last
        cached listing (however old) or the static fallback list is returned
        with degraded=True.
        """
        cache = self._caches.cache(CacheScope.COMPANIES)
        with self._tracker.track("list_company_folders"):
            try:
                folders = await cache.get_or_compute(ALL_COMPANIES, self._build_company_folders)
                return FolderListing(folders=folders)
            except DataSourceError as e:
                stale = cache.peek(ALL_COMPANIES)
                if stale is not None:
                    return self._degraded(stale.value, AggregationFallback.STALE_CACHE, "companies", e)
                return self._degraded(self._static_folders(), AggregationFallback.STATIC, "companies", e)

    async def list_employee_folders(self, company_name: str) -> FolderListing:
        """
        Employee folders of one company. Companies whose files are listed
        directly get an empty listing. A failed fetch serves a stale listing
        when one exists and raises DataSourceError otherwise.
        """
        display = self._resolver.company_display_name(company_name)
        if self._resolver.lists_files_directly(display):
            return FolderListing()

        cache = self._caches.cache(CacheScope.EMPLOYEES)
        with self._tracker.track("list_employee_folders"):
            try:
                folders = await cache.get_or_compute(
                    display, lambda: self._build_employee_folders(display)
                )
                return FolderListing(folders=folders)
            except DataSourceError as e:
                stale = cache.peek(display)
                if stale is None:
                    raise
                return self._degraded(stale.value, AggregationFallback.STALE_CACHE, "employees", e, key=display)

    async def _build_company_folders(self) -> List[Folder]:
        rows = await self._fetcher.fetch_rows(ScopeFilter.all())
        folders = self._aggregator.build_company_folders(rows)
        logger.info(f"Built {len(folders)} company folders from {len(rows)} rows")
        return folders

    async def _build_employee_folders(self, display: str) -> List[Folder]:
        rows = await self._company_rows(display)
        employee_ids = sorted({r.employee_id for r in rows if r.employee_id})
        names = await self._employee_names(employee_ids)
        folders = self._aggregator.build_employee_folders(rows, display, names)
        logger.info(f"Built {len(folders)} employee folders for {display} from {len(rows)} rows")
        return folders

    def _degraded(
        self,
        folders: List[Folder],
        source: str,
        scope: str,
        cause: DataSourceError,
        key: Optional[str] = None,
    ) -> FolderListing:
        warning = AggregationFallback(
            f"Serving {source} {scope} listing: {cause.message}",
            operation=f"list_{scope}",
            scope=scope,
            key=key,
            source=source,
            cause=cause,
        )
        logger.warning(warning.message)
        log(log_cache_event(f"{scope}_fallback", scope, key=key, source=source, error=cause.message))
        return FolderListing(folders=list(folders), degraded=True, warning=warning)

    def _static_folders(self) -> List[Folder]:
        now = _utcnow()
        return [
            Folder(
                id=f"company-{fb.prefix}",
                display_name=fb.display_name,
                kind=FolderKind.COMPANY,
                company_name=fb.display_name,
                document_count=0,
                last_modified=now,
                path=f"/{fb.display_name}",
                prefixes=[fb.prefix],
            )
            for fb in self._resolver.fallback_company_folders()
        ]

    # -----------------------------------------------------------------------
    # Documents
    # -----------------------------------------------------------------------

    async def list_documents(self, scope: DocumentScope) -> List[DocumentRow]:
        if scope.kind == DocumentScopeKind.COMPANY:
            display = self._resolver.company_display_name(scope.value)
            return list(await self._company_rows(display))

        cache = self._caches.cache(CacheScope.DOCUMENTS)
        employee_id = scope.value.strip()
        return list(await cache.get_or_compute(
            employee_id, lambda: self._fetcher.fetch_rows(ScopeFilter.employee(employee_id))
        ))

    async def get_document(self, document_id: str) -> DocumentRow:
        rows = await self._read(
            self._source.select(self._documents_table, row_filter=RowFilter(ids=[document_id]), limit=1),
            self._documents_table,
            "get_document",
        )
        if not rows:
            raise DocumentNotFoundError(
                f"Document not found: {document_id}", operation="get_document", key=document_id
            )
        return DocumentRow.model_validate(rows[0])

    async def get_presigned_url(self, document_id: str) -> str:
        with self._tracker.track("get_presigned_url"):
            return await self._signer.get_presigned_url(document_id)

    async def _company_rows(self, display: str) -> List[DocumentRow]:
        cache = self._caches.cache(CacheScope.COMPANY_ROWS)
        prefixes = self._resolver.prefixes_for_company(display)
        return await cache.get_or_compute(
            display, lambda: self._fetcher.fetch_rows(ScopeFilter.company(prefixes))
        )

    async def _employee_names(self, employee_ids: Sequence[str]) -> Dict[str, Optional[str]]:
        names: Dict[str, Optional[str]] = {}
        chunk = self._config.fetch.page_size
        for i in range(0, len(employee_ids), chunk):
            raw = await self._read(
                self._source.select(
                    self._employees_table,
                    columns=["employee_id", "name", "company_name"],
                    row_filter=RowFilter(employee_ids=list(employee_ids[i:i + chunk])),
                ),
                self._employees_table,
                "list_employee_folders",
            )
            for item in raw:
                employee = EmployeeRow.model_validate(item)
                names[employee.employee_id] = employee.name
        return names

    async def _read(self, call: Awaitable[Any], table: str, operation: str) -> Any:
        return await read_with_timeout(call, self._config.fetch.page_timeout, table, operation)

    # -----------------------------------------------------------------------
    # Search
    # -----------------------------------------------------------------------

    async def search_employee_folders(self, term: str, limit: int = 20) -> List[Folder]:
        """Employees whose name, id or company matches term, most documents first."""
        term = (term or "").strip()
        if not term:
            return []

        raw = await self._read(
            self._source.select(
                self._employees_table,
                columns=["employee_id", "name", "company_name"],
                row_filter=RowFilter(search=term, search_columns=["name", "employee_id", "company_name"]),
                limit=SEARCH_CANDIDATES,
            ),
            self._employees_table,
            "search_employee_folders",
        )
        employees = [EmployeeRow.model_validate(item) for item in raw]
        if not employees:
            return []

        rows = await self._fetcher.fetch_rows(ScopeFilter.employees([e.employee_id for e in employees]))
        by_employee: Dict[str, List[DocumentRow]] = {}
        for row in rows:
            if row.employee_id:
                by_employee.setdefault(row.employee_id, []).append(row)

        now = _utcnow()
        folders: List[Folder] = []
        for employee in employees:
            docs = by_employee.get(employee.employee_id, [])
            stamps = [d.uploaded_at for d in docs if d.uploaded_at is not None]
            company = self._resolver.company_display_name(employee.company_name or "")
            folders.append(Folder(
                id=f"emp-{employee.employee_id}",
                display_name=self._resolver.resolve_display_name(employee.employee_id, db_name=employee.name),
                kind=FolderKind.EMPLOYEE,
                company_name=company,
                employee_id=employee.employee_id,
                document_count=len(docs),
                last_modified=max(stamps) if stamps else now,
                path=f"{company}/{employee.employee_id}",
                prefixes=sorted({d.prefix for d in docs}),
            ))

        folders.sort(key=lambda f: (-f.document_count, f.display_name.casefold()))
        return folders[:limit]

    # -----------------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------------

    async def upload_document(self, request: UploadRequest, data: bytes) -> DocumentRow:
        """
        Upload, verify, then insert metadata. If the insert fails the uploaded
        object is deleted again (best effort) and DataSourceError is raised.
        """
        segment, rest = request.storage_key.split("/", 1)
        prefix = self._resolver.upload_prefix(segment)
        key = f"{prefix}/{rest}"

        written = await self._store.upload(
            key,
            data,
            content_type=request.content_type,
            metadata={"employee_id": request.employee_id, "document_type": request.document_type},
        )
        log(log_storage_operation("upload", written, True, size=len(data)))

        if not await self._store.exists(written):
            log(log_storage_operation("verify", written, False, error="object missing after upload"))
            raise StorageError(
                f"Upload verification failed: {written} not found",
                operation="upload_document",
                storage_key=written,
            )

        record = {
            "id": str(uuid.uuid4()),
            "employee_id": request.employee_id,
            "document_type": request.document_type,
            "file_name": request.file_name,
            "file_path": written,
            "file_url": "",
            "file_size": request.file_size or len(data),
            "file_type": request.file_type,
            "mime_type": request.content_type,
            "notes": request.notes,
            "is_active": True,
            "uploaded_at": _utcnow(),
        }
        try:
            inserted = await self._source.insert(self._documents_table, record)
        except DataSourceError as e:
            logger.error(f"Metadata insert failed for {written}, removing uploaded object: {e.message}")
            await self._compensate(written)
            raise

        document = DocumentRow.model_validate(inserted)
        log(log_document_event("document_uploaded", document.id, storage_key=written))
        self._invalidate_for(self._resolver.company_display_name(prefix), request.employee_id)
        return document

    async def _compensate(self, key: str) -> None:
        try:
            await self._store.delete(key)
            log(log_storage_operation("compensating_delete", key, True))
        except StorageError as e:
            logger.error(f"Compensating delete failed for {key}: {e.message}")
            log(log_storage_operation("compensating_delete", key, False, error=e.message))

    async def delete_document(self, document_id: str) -> DocumentRow:
        """Storage first; a StorageError aborts before metadata is touched."""
        document = await self.get_document(document_id)

        if document.storage_key:
            try:
                await self._store.delete(document.storage_key)
            except StorageError as e:
                log(log_storage_operation("delete", document.storage_key, False, error=e.message))
                raise
            log(log_storage_operation("delete", document.storage_key, True))

        await self._source.delete(self._documents_table, RowFilter(ids=[document_id]))
        log(log_document_event("document_deleted", document_id, storage_key=document.storage_key))

        display = self._resolver.company_display_name(document.prefix) if document.prefix else None
        self._invalidate_for(display, document.employee_id)
        self._caches.invalidate(CacheScope.PRESIGNED, document_id)
        return document

    # -----------------------------------------------------------------------
    # Cache control
    # -----------------------------------------------------------------------

    def invalidate(self, scope: CacheScope | str, key: Optional[Hashable] = None) -> int:
        """
        Drop one key (or every key) of a scope. Company keys may be given in
        any historical spelling.
        """
        scope = CacheScope(scope)
        if key is not None and scope in (CacheScope.EMPLOYEES, CacheScope.COMPANY_ROWS):
            key = self._resolver.company_display_name(str(key))
        if scope == CacheScope.PRESIGNED and key is None:
            self._signer.clear()
        removed = self._caches.invalidate(scope, key)
        log(log_cache_event("cache_invalidated", scope.value, key=None if key is None else str(key), removed=removed))
        return removed

    async def force_refresh(self) -> FolderListing:
        """Clear every cache and rebuild the company listing."""
        self._caches.clear()
        self._signer.clear()
        log(log_cache_event("cache_cleared", "all"))
        return await self.list_company_folders()

    def _invalidate_for(self, company: Optional[str], employee_id: Optional[str]) -> None:
        self.invalidate(CacheScope.COMPANIES)
        if company:
            self.invalidate(CacheScope.EMPLOYEES, company)
            self.invalidate(CacheScope.COMPANY_ROWS, company)
        if employee_id:
            self.invalidate(CacheScope.DOCUMENTS, str(employee_id))

    async def aclose(self) -> None:
        await self._signer.aclose()
        if self._owns_source and isinstance(self._source, SqlAlchemySource):
            self._source.dispose()
            logger.info("Disposed database engine")
