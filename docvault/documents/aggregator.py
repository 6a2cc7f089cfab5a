"""
DocVault Folder Aggregator — groups document rows into Folder views.

Company folders are keyed by resolved display name, not raw prefix, which
is what merges drifted prefixes (GOLDEN_CUBS / GOLDEN CUBS) into one folder.
Employee folders are keyed by employee_id within one company.

Folders only arise from observed rows; the static fallback list is the
service's concern, not this module's.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from docvault.documents.models import DocumentRow, Folder, FolderKind
from docvault.documents.naming import NameResolver

logger = logging.getLogger("docvault.documents.aggregator")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Group:
    prefixes: Dict[str, str] = field(default_factory=dict)  # raw prefix -> display name
    count: int = 0
    last_modified: Optional[datetime] = None
    path_hints: Set[str] = field(default_factory=set)

    def add(self, row: DocumentRow) -> None:
        self.count += 1
        ts = row.uploaded_at
        if ts is not None and (self.last_modified is None or ts > self.last_modified):
            self.last_modified = ts


class FolderAggregator:
    """
    Usage:
        aggregator = FolderAggregator(resolver)
        folders = aggregator.build_company_folders(rows)
    """

    def __init__(self, resolver: NameResolver, now: Callable[[], datetime] = utcnow):
        self._resolver = resolver
        self._now = now

    def build_company_folders(self, rows: Iterable[DocumentRow]) -> List[Folder]:
        groups: Dict[str, _Group] = {}
        excluded = 0

        for row in rows:
            prefix = row.prefix
            if self._resolver.is_excluded(prefix):
                excluded += 1
                continue
            display = self._resolver.company_display_name(prefix)
            group = groups.setdefault(display.casefold(), _Group())
            group.prefixes.setdefault(prefix, display)
            group.add(row)

        folders: List[Folder] = []
        for group in groups.values():
            representative = self._representative(group)
            display = group.prefixes[representative]
            folders.append(Folder(
                id=f"company-{representative}",
                display_name=display,
                kind=FolderKind.COMPANY,
                company_name=display,
                document_count=group.count,
                last_modified=group.last_modified or self._now(),
                path=f"/{display}",
                prefixes=sorted(group.prefixes),
            ))

        folders.sort(key=lambda f: f.display_name.casefold())
        if excluded:
            logger.debug(f"Excluded {excluded} rows under excluded or empty prefixes")
        merged = [f for f in folders if len(f.prefixes) > 1]
        if merged:
            logger.debug(
                "Merged prefixes: "
                + "; ".join(f"{f.display_name} <- {f.prefixes}" for f in merged)
            )
        return folders

    def build_employee_folders(
        self,
        rows: Iterable[DocumentRow],
        company_name: str,
        employee_names: Optional[Mapping[str, Optional[str]]] = None,
    ) -> List[Folder]:
        employee_names = employee_names or {}
        groups: Dict[str, _Group] = {}

        for row in rows:
            employee_id = (row.employee_id or "").strip()
            if not employee_id:
                continue
            group = groups.setdefault(employee_id, _Group())
            group.prefixes.setdefault(row.prefix, company_name)
            hint = row.path_segment
            if hint and hint != employee_id:
                group.path_hints.add(hint)
            group.add(row)

        folders: List[Folder] = []
        for employee_id, group in groups.items():
            # Several spellings of the same folder: pick deterministically
            hint = min(group.path_hints) if group.path_hints else None
            display = self._resolver.resolve_display_name(
                employee_id,
                db_name=employee_names.get(employee_id),
                path_hint=hint,
            )
            folders.append(Folder(
                id=f"emp-{employee_id}",
                display_name=display,
                kind=FolderKind.EMPLOYEE,
                company_name=company_name,
                employee_id=employee_id,
                document_count=group.count,
                last_modified=group.last_modified or self._now(),
                path=f"{company_name}/{employee_id}",
                prefixes=sorted(group.prefixes),
            ))

        folders.sort(key=lambda f: (f.display_name.casefold(), f.employee_id or ""))
        return folders

    def _representative(self, group: _Group) -> str:
        """Designated canonical prefix when present, else the first in sort order."""
        display = next(iter(group.prefixes.values()))
        canonical = self._resolver.canonical_prefix(display)
        if canonical and canonical in group.prefixes:
            return canonical
        return sorted(group.prefixes)[0]
