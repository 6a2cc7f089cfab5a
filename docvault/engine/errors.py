"""
DocVault Error Hierarchy — Structured exceptions for the folder/caching layer.

Every error carries free-form context (company, employee_id, storage_key, ...)
and serializes to JSON so it can be written to the structured event log as-is.

Hierarchy:
    DocVaultError
    ├── DataSourceError        — Relational read/write failed or timed out
    ├── StorageError           — Object-store operation failed
    ├── SigningError           — Every signing attempt exhausted
    ├── DocumentNotFoundError  — No row for a document id
    ├── AggregationFallback    — Degraded-success marker attached to listings
    └── ConfigError            — Invalid docvault.yaml or naming data
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class DocVaultError(Exception):
    """
    Base error for all DocVault failures.
    All context is serializable to JSON for logging.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.operation: Optional[str] = context.get("operation")
        self.scope: Optional[str] = context.get("scope")
        self.key: Optional[str] = context.get("key")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict for logging."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "operation": self.operation,
            "scope": self.scope,
            "key": self.key,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("operation", "scope", "key")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.key:
            parts.append(f"key={self.key}")
        return " | ".join(parts)


class DataSourceError(DocVaultError):
    """
    Relational read or write failed or timed out.
    Not retried by this layer; the caller decides.
    """

    def __init__(self, message: str, **context: Any):
        self.table: Optional[str] = context.get("table")
        self.offset: Optional[int] = context.get("offset")
        self.timed_out: bool = bool(context.get("timed_out", False))
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["table"] = self.table
        d["offset"] = self.offset
        d["timed_out"] = self.timed_out
        return d


class StorageError(DocVaultError):
    """Object-store operation failed (upload, delete, exists, list, presign)."""

    def __init__(self, message: str, **context: Any):
        self.storage_key: Optional[str] = context.get("storage_key")
        self.attempts: Optional[int] = context.get("attempts")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["storage_key"] = self.storage_key
        d["attempts"] = self.attempts
        return d


class SigningError(DocVaultError):
    """
    All signing attempts for a document were exhausted.
    Callers must treat this as a hard failure; there is no unsigned fallback.
    """

    def __init__(self, message: str, **context: Any):
        self.document_id: Optional[str] = context.get("document_id")
        self.attempts: List[Dict[str, str]] = context.get("attempts", [])
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["document_id"] = self.document_id
        d["attempts"] = self.attempts
        return d


class DocumentNotFoundError(DocVaultError):
    """No document row exists for the requested id."""
    pass


class AggregationFallback(DocVaultError):
    """
    A folder listing was served from a stale cache entry or the static
    fallback list because the row fetch failed.

    Attached to FolderListing.warning — never raised to callers.
    """

    STALE_CACHE = "stale_cache"
    STATIC = "static"

    def __init__(self, message: str, **context: Any):
        self.source: str = context.get("source", self.STATIC)
        self.cause: Optional[BaseException] = context.get("cause")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["source"] = self.source
        d["cause"] = repr(self.cause) if self.cause is not None else None
        return d


class ConfigError(DocVaultError):
    """Configuration error — invalid docvault.yaml or naming tables."""
    pass
