"""
DocVault Document Models — pydantic records validated at the adapter boundary.

DocumentRow and EmployeeRow wrap raw relational rows; Folder and
FolderListing are the aggregated, never-persisted views handed to callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from docvault.engine.errors import AggregationFallback


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Best-effort timestamp parse; anything unparsable becomes None (always UTC-aware)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DocumentRow(BaseModel):
    """One stored object's metadata. storage_key is the file_path column."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    storage_key: str = Field(alias="file_path")
    employee_id: Optional[str] = None
    file_name: str = ""
    uploaded_at: Optional[datetime] = None
    file_url: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    mime_type: Optional[str] = None
    document_type: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True

    @field_validator("id", "employee_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @field_validator("storage_key", "file_name", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("uploaded_at", mode="before")
    @classmethod
    def normalize_uploaded_at(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @field_validator("is_active", mode="before")
    @classmethod
    def default_active(cls, v: Any) -> Any:
        return True if v is None else v

    @property
    def prefix(self) -> str:
        """First key segment: the raw company prefix."""
        return self.storage_key.split("/", 1)[0].strip()

    @property
    def path_segment(self) -> Optional[str]:
        """Second key segment, usually the employee folder name."""
        parts = self.storage_key.split("/")
        if len(parts) > 2 and parts[1].strip():
            return parts[1].strip()
        return None

    def to_record(self) -> Dict[str, Any]:
        """Dump with relational column names (file_path, not storage_key)."""
        return self.model_dump(by_alias=True, mode="json")


class EmployeeRow(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    employee_id: str
    name: Optional[str] = None
    company_name: Optional[str] = None

    @field_validator("employee_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class FolderKind(str, Enum):
    COMPANY = "company"
    EMPLOYEE = "employee"


class Folder(BaseModel):
    """Aggregated view over rows sharing one display name. Never persisted."""
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    kind: FolderKind
    company_name: str
    employee_id: Optional[str] = None
    document_count: int = 0
    last_modified: datetime
    path: str
    prefixes: List[str] = Field(default_factory=list)


@dataclass
class FolderListing:
    """
    Result of a folder listing. Behaves like the list of folders it carries;
    degraded/warning report a stale or static fallback.
    """
    folders: List[Folder] = field(default_factory=list)
    degraded: bool = False
    warning: Optional[AggregationFallback] = None

    def __iter__(self) -> Iterator[Folder]:
        return iter(self.folders)

    def __len__(self) -> int:
        return len(self.folders)

    def __getitem__(self, index: int) -> Folder:
        return self.folders[index]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "folders": [f.model_dump(mode="json") for f in self.folders],
            "degraded": self.degraded,
            "warning": self.warning.to_dict() if self.warning else None,
        }


class UploadRequest(BaseModel):
    employee_id: str
    document_type: str
    file_name: str
    storage_key: str
    content_type: str = "application/octet-stream"
    file_size: int = 0
    file_type: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("storage_key")
    @classmethod
    def require_company_segment(cls, v: str) -> str:
        v = v.strip().lstrip("/")
        if "/" not in v or not v.split("/", 1)[0].strip():
            raise ValueError("storage_key must start with a company prefix segment")
        return v


class DocumentScopeKind(str, Enum):
    COMPANY = "company"
    EMPLOYEE = "employee"


@dataclass(frozen=True)
class DocumentScope:
    """Which documents list_documents() returns."""
    kind: DocumentScopeKind
    value: str

    @classmethod
    def company(cls, company_name: str) -> "DocumentScope":
        return cls(DocumentScopeKind.COMPANY, company_name)

    @classmethod
    def employee(cls, employee_id: str) -> "DocumentScope":
        return cls(DocumentScopeKind.EMPLOYEE, employee_id)
