"""
DocVault Presigned URL Resolver — time-limited access URLs for stored objects.

Resolution order for get_presigned_url(document_id):
    1. presigned cache hit
    2. join an in-flight resolution for the same document
    3. load the row; path cache (filled by prefetch) or an already-signed file_url
    4. each configured signer in order, each bounded by signing.timeout:
       edge function (HTTP) -> preview route (HTTP) -> object store presign
    5. every signer failed -> SigningError

An unsigned URL is never returned.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence
from urllib.parse import parse_qs, urlsplit

import httpx

from docvault.db.source import RelationalSource, RowFilter, read_with_timeout
from docvault.documents.models import DocumentRow
from docvault.engine.cache import CacheManager, CacheScope, TTLCache
from docvault.engine.config import SigningConfig
from docvault.engine.errors import DocumentNotFoundError, SigningError
from docvault.engine.logging import log, log_signing
from docvault.storage.object_store import ObjectStore

logger = logging.getLogger("docvault.storage.signing")


# ---------------------------------------------------------------------------
# Signers
# ---------------------------------------------------------------------------

class Signer(abc.ABC):
    """Turns a storage key into a signed URL, or raises."""

    name: str = "signer"

    @abc.abstractmethod
    async def sign(self, key: str, file_name: Optional[str] = None) -> str:
        ...

    async def aclose(self) -> None:
        pass


class _HttpSigner(Signer):
    """Shared httpx client handling for the HTTP signers."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._timeout = timeout
        self._headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers=self._headers,
                transport=self._transport,
            )
        return self._client

    async def _post(self, payload: Dict[str, Any]) -> Any:
        try:
            resp = await self._get_client().post(self._url, json=payload)
        except httpx.HTTPError as e:
            raise SigningError(f"{self.name} request failed: {e}", operation="sign") from e
        if not 200 <= resp.status_code < 300:
            raise SigningError(
                f"{self.name} returned HTTP {resp.status_code}",
                operation="sign",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise SigningError(f"{self.name} returned a non-JSON body", operation="sign") from e

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


class EdgeFunctionSigner(_HttpSigner):
    """
    Remote document-manager function.

    Request:  {"action": "getSignedUrl", "directFilePath": key, "fileName": name}
    Response: {"success": true, "signedUrl": "..."}
    """

    name = "edge_function"

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}", "apikey": api_key} if api_key else {}
        super().__init__(url, timeout=timeout, headers=headers, transport=transport)

    async def sign(self, key: str, file_name: Optional[str] = None) -> str:
        body = await self._post({
            "action": "getSignedUrl",
            "directFilePath": key,
            "fileName": file_name or key.rsplit("/", 1)[-1],
        })
        if not isinstance(body, dict) or not body.get("success") or not body.get("signedUrl"):
            error = body.get("error") if isinstance(body, dict) else None
            raise SigningError(f"edge function did not sign {key}: {error or 'no signedUrl'}", operation="sign")
        return str(body["signedUrl"])


class PreviewRouteSigner(_HttpSigner):
    """
    Server-side preview route.

    Request:  {"filePath": key}
    Response: {"data": {"previewUrl": "..."}}
    """

    name = "preview_route"

    async def sign(self, key: str, file_name: Optional[str] = None) -> str:
        body = await self._post({"filePath": key})
        data = body.get("data") if isinstance(body, dict) else None
        url = data.get("previewUrl") if isinstance(data, dict) else None
        if not url:
            raise SigningError(f"preview route did not sign {key}", operation="sign")
        return str(url)


class ObjectStoreSigner(Signer):
    """Presign directly against the object store."""

    name = "object_store"

    def __init__(self, store: ObjectStore, ttl_seconds: int = 3600):
        self._store = store
        self._ttl_seconds = ttl_seconds

    async def sign(self, key: str, file_name: Optional[str] = None) -> str:
        return await self._store.presign(key, self._ttl_seconds)


def build_signers(config: SigningConfig, store: Optional[ObjectStore] = None) -> List[Signer]:
    """Signer chain in fallback order, from docvault.yaml → signing."""
    signers: List[Signer] = []
    if config.edge_function_url:
        signers.append(EdgeFunctionSigner(config.edge_function_url, config.edge_function_key, config.timeout))
    if config.preview_route_url:
        signers.append(PreviewRouteSigner(config.preview_route_url, config.timeout))
    if config.use_object_store and store is not None:
        signers.append(ObjectStoreSigner(store, config.url_ttl_seconds))
    return signers


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class PresignedUrlResolver:
    """
    Usage:
        resolver = PresignedUrlResolver(source, caches, build_signers(config.signing, store))
        url = await resolver.get_presigned_url("doc-123")
    """

    def __init__(
        self,
        source: RelationalSource,
        caches: CacheManager,
        signers: Sequence[Signer],
        config: Optional[SigningConfig] = None,
        documents_table: str = "employee_documents",
        read_timeout: float = 10.0,
    ):
        self._source = source
        self._caches = caches
        self._read_timeout = read_timeout
        self._signers = list(signers)
        self._config = config or SigningConfig()
        self._table = documents_table
        self._markers = {m.casefold() for m in self._config.signature_markers}
        # storage_key -> url, filled by prefetch(); same TTL as the per-document cache
        self._path_cache: TTLCache[str] = TTLCache(
            "presigned_paths", caches.cache(CacheScope.PRESIGNED).ttl_ms, caches.clock
        )

    @property
    def signers(self) -> List[Signer]:
        return list(self._signers)

    async def get_presigned_url(self, document_id: str) -> str:
        cache = self._caches.cache(CacheScope.PRESIGNED)
        return await cache.get_or_compute(document_id, lambda: self._resolve(document_id))

    def is_signed(self, url: Optional[str]) -> bool:
        """True when url carries one of the signature query parameters."""
        if not url:
            return False
        try:
            params = parse_qs(urlsplit(url).query, keep_blank_values=True)
        except ValueError:
            return False
        return any(name.casefold() in self._markers for name in params)

    async def prefetch(self, keys: Iterable[str]) -> Dict[str, str]:
        """
        Sign many storage keys up front (e.g. for a listing that is about to
        be rendered). Failures are logged and skipped.
        """
        pending = sorted({k for k in keys if k and self._path_cache.get(k) is None})
        semaphore = asyncio.Semaphore(max(1, self._config.prefetch_concurrency))
        signed: Dict[str, str] = {}

        async def one(key: str) -> None:
            async with semaphore:
                try:
                    url = await self._path_cache.get_or_compute(key, lambda: self._sign(key))
                except SigningError as e:
                    logger.warning(f"Prefetch could not sign {key}: {e.message}")
                    return
                signed[key] = url

        await asyncio.gather(*(one(k) for k in pending))
        logger.debug(f"Prefetched {len(signed)}/{len(pending)} signed URLs")
        return signed

    def clear(self) -> None:
        self._path_cache.clear()

    async def aclose(self) -> None:
        for signer in self._signers:
            await signer.aclose()

    # ── internals ──

    async def _resolve(self, document_id: str) -> str:
        start = time.perf_counter()
        row = await self._load(document_id)

        by_path = self._path_cache.get(row.storage_key)
        if by_path:
            # the document entry expires with the prefetched URL, not later
            entry = self._path_cache.peek(row.storage_key)
            presigned = self._caches.cache(CacheScope.PRESIGNED)
            if entry is not None and presigned.is_inflight(document_id):
                presigned.set(document_id, by_path, timestamp=entry.timestamp)
            log(log_signing(document_id, "path_cache", True, (time.perf_counter() - start) * 1000))
            return by_path

        if self.is_signed(row.file_url):
            log(log_signing(document_id, "stored_url", True, (time.perf_counter() - start) * 1000))
            return row.file_url  # type: ignore[return-value]

        return await self._sign(row.storage_key, row.file_name, document_id)

    async def _load(self, document_id: str) -> DocumentRow:
        rows = await read_with_timeout(
            self._source.select(
                self._table,
                columns=["id", "file_path", "file_url", "file_name"],
                row_filter=RowFilter(ids=[document_id]),
                limit=1,
            ),
            self._read_timeout,
            self._table,
            "get_presigned_url",
        )
        if not rows:
            raise DocumentNotFoundError(
                f"Document not found: {document_id}",
                operation="get_presigned_url",
                key=document_id,
            )
        return DocumentRow.model_validate(rows[0])

    async def _sign(self, key: str, file_name: Optional[str] = None, document_id: Optional[str] = None) -> str:
        start = time.perf_counter()
        attempts: List[Dict[str, str]] = []

        for signer in self._signers:
            try:
                url = await asyncio.wait_for(signer.sign(key, file_name), timeout=self._config.timeout)
            except asyncio.TimeoutError:
                attempts.append({"signer": signer.name, "error": f"timeout after {self._config.timeout}s"})
                logger.warning(f"Signer {signer.name} timed out for {key}")
                continue
            except Exception as e:
                attempts.append({"signer": signer.name, "error": str(e) or e.__class__.__name__})
                logger.warning(f"Signer {signer.name} failed for {key}: {e}")
                continue

            if not url or not url.startswith(("http://", "https://")):
                attempts.append({"signer": signer.name, "error": "empty or invalid url"})
                continue

            duration_ms = (time.perf_counter() - start) * 1000
            log(log_signing(document_id or key, signer.name, True, duration_ms, attempts))
            return url

        duration_ms = (time.perf_counter() - start) * 1000
        log(log_signing(document_id or key, "none", False, duration_ms, attempts))
        raise SigningError(
            f"Failed to generate signed URL for {document_id or key}",
            operation="get_presigned_url",
            key=key,
            document_id=document_id,
            attempts=attempts,
        )
