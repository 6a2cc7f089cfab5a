"""
DocVault Documents — row fetching, naming, aggregation and the folder service.

The service itself lives in docvault.documents.service (it depends on
docvault.storage, which depends on the models here).
"""

from docvault.documents.aggregator import FolderAggregator  # noqa: F401
from docvault.documents.fetcher import RowFetcher, ScopeFilter  # noqa: F401
from docvault.documents.models import (  # noqa: F401
    DocumentRow,
    DocumentScope,
    EmployeeRow,
    Folder,
    FolderKind,
    FolderListing,
    UploadRequest,
)
from docvault.documents.naming import NameResolver  # noqa: F401

__all__ = [
    "DocumentRow",
    "DocumentScope",
    "EmployeeRow",
    "Folder",
    "FolderKind",
    "FolderListing",
    "UploadRequest",
    "RowFetcher",
    "ScopeFilter",
    "NameResolver",
    "FolderAggregator",
]
