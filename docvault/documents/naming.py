"""
DocVault Name Resolver — turns raw storage-key segments into display names.

Company prefixes go through the alias table (exact, then case-insensitive),
falling back to "_" -> " " formatting. Employee segments go through a
priority chain:

    1. employee record name (trimmed)
    2. path hint (trimmed)
    3. pattern converter (sequence lookup / embedded name)
    4. cosmetic formatter

The tables are immutable data loaded from docvault/documents/data/naming.yaml
(or naming.tables_path in docvault.yaml). Unknown input always passes
through; resolution never raises.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from docvault.engine.errors import ConfigError

logger = logging.getLogger("docvault.documents.naming")

DEFAULT_TABLES_PATH = Path(__file__).parent / "data" / "naming.yaml"


# ---------------------------------------------------------------------------
# Table schema
# ---------------------------------------------------------------------------

class EmployeePattern(BaseModel):
    kind: Literal["sequence", "embedded_name"]
    prefixes: List[str]
    pad: int = 0
    names: Dict[str, str] = Field(default_factory=dict)


class FallbackFolder(BaseModel):
    prefix: str
    display_name: str


class NamingTables(BaseModel):
    version: int = 1
    excluded_prefixes: List[str] = Field(default_factory=list)
    company_aliases: Dict[str, str] = Field(default_factory=dict)
    canonical_prefixes: Dict[str, str] = Field(default_factory=dict)
    upload_prefixes: Dict[str, str] = Field(default_factory=dict)
    direct_listing: List[str] = Field(default_factory=list)
    fallback_folders: List[FallbackFolder] = Field(default_factory=list)
    employee_patterns: List[EmployeePattern] = Field(default_factory=list)
    company_tokens: List[str] = Field(default_factory=list)


def load_tables(path: Optional[str] = None) -> NamingTables:
    """Load naming tables from YAML. Raises ConfigError if unreadable or invalid."""
    tables_path = Path(path) if path else DEFAULT_TABLES_PATH
    try:
        with open(tables_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read naming tables {tables_path}: {e}", path=str(tables_path)) from e

    try:
        tables = NamingTables(**raw)
    except (TypeError, ValidationError) as e:
        raise ConfigError(f"Invalid naming tables {tables_path}: {e}", path=str(tables_path)) from e
    logger.debug(f"Loaded naming tables v{tables.version} from {tables_path}")
    return tables


def _fold(value: str) -> str:
    return value.strip().casefold()


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class NameResolver:
    """
    Usage:
        resolver = NameResolver.from_path()
        resolver.company_display_name("GOLDEN_CUBS")       # "GOLDEN CUBS"
        resolver.resolve_display_name("AL_ASHBAL004")      # "ABDUR ROHIM"
    """

    def __init__(self, tables: Optional[NamingTables] = None):
        self._tables = tables if tables is not None else load_tables()
        t = self._tables

        self._aliases: Dict[str, str] = dict(t.company_aliases)
        self._aliases_folded: Dict[str, str] = {}
        for prefix, display in t.company_aliases.items():
            self._aliases_folded.setdefault(_fold(prefix), display)

        self._canonical: Dict[str, str] = {_fold(k): v for k, v in t.canonical_prefixes.items()}
        self._upload: Dict[str, str] = {_fold(k): v for k, v in t.upload_prefixes.items()}
        self._excluded = {p.strip() for p in t.excluded_prefixes}
        self._direct = {_fold(name) for name in t.direct_listing}
        self._token_re = self._compile_tokens(t.company_tokens)

    @classmethod
    def from_path(cls, path: Optional[str] = None) -> "NameResolver":
        return cls(load_tables(path))

    @property
    def tables(self) -> NamingTables:
        return self._tables

    @staticmethod
    def _compile_tokens(tokens: List[str]) -> Optional[re.Pattern]:
        if not tokens:
            return None
        # Longest first so "CUBS TECH" wins over "CUBS"
        ordered = sorted(tokens, key=len, reverse=True)
        parts = ["[ _]".join(re.escape(word) for word in token.split()) for token in ordered]
        return re.compile(rf"^(?:{'|'.join(parts)})[ _]", re.IGNORECASE)

    # ── Company names ──

    def company_display_name(self, prefix: str) -> str:
        """Alias lookup (exact, then case-insensitive), else "_" -> " "."""
        raw = (prefix or "").strip()
        if raw in self._aliases:
            return self._aliases[raw]
        folded = self._aliases_folded.get(_fold(raw))
        if folded is not None:
            return folded
        return raw.replace("_", " ").strip()

    def prefixes_for_company(self, display_name: str) -> List[str]:
        """Every raw prefix that resolves to display_name, plus the name itself."""
        target = self.company_display_name(display_name)
        key = _fold(target)
        prefixes = {target, target.replace(" ", "_")}
        prefixes.update(p for p, d in self._aliases.items() if _fold(d) == key)
        canonical = self.canonical_prefix(target)
        if canonical:
            prefixes.add(canonical)
        prefixes.add(self.upload_prefix(target))
        return sorted(p for p in prefixes if p and p not in self._excluded)

    def canonical_prefix(self, display_name: str) -> Optional[str]:
        return self._canonical.get(_fold(display_name))

    def upload_prefix(self, company_name: str) -> str:
        """The prefix new uploads for this company are written under."""
        raw = (company_name or "").strip()
        return self._upload.get(_fold(raw), raw)

    def is_excluded(self, prefix: str) -> bool:
        return not prefix or not prefix.strip() or prefix.strip() in self._excluded

    def lists_files_directly(self, display_name: str) -> bool:
        return _fold(self.company_display_name(display_name)) in self._direct

    def fallback_company_folders(self) -> List[FallbackFolder]:
        return list(self._tables.fallback_folders)

    # ── Employee names ──

    def resolve_display_name(
        self,
        raw_segment: str,
        db_name: Optional[str] = None,
        path_hint: Optional[str] = None,
    ) -> str:
        if db_name and db_name.strip():
            return db_name.strip()
        if path_hint and path_hint.strip():
            return path_hint.strip()

        raw = "" if raw_segment is None else str(raw_segment)
        converted = self.convert_employee_id(raw)
        if converted != raw:
            return converted
        return self.format_employee_id(raw)

    def convert_employee_id(self, employee_id: str) -> str:
        """Pattern converter; returns the id unchanged when nothing matches."""
        for pattern in self._tables.employee_patterns:
            matched = [p for p in pattern.prefixes if employee_id.startswith(p)]
            if not matched:
                continue

            if pattern.kind == "sequence":
                rest = employee_id
                for prefix in pattern.prefixes:
                    rest = rest.replace(prefix, "")
                digits = re.sub(r"[^0-9]", "", rest)
                if digits and pattern.pad:
                    digits = digits.zfill(pattern.pad)
                name = pattern.names.get(digits)
                if name:
                    return name
            else:
                rest = employee_id
                for prefix in pattern.prefixes:
                    rest = rest.replace(prefix, "", 1)
                rest = rest.strip()
                if rest:
                    return rest.replace("_", " ")
        return employee_id

    def format_employee_id(self, employee_id: str) -> str:
        """Strip a leading company token, "_" -> " ", title-case as a last resort."""
        formatted = employee_id
        if self._token_re is not None:
            formatted = self._token_re.sub("", formatted, count=1)
        formatted = formatted.replace("_", " ").strip()

        if formatted == employee_id:
            parts = [p for p in re.split(r"[ _-]", employee_id) if p]
            if len(parts) > 1:
                return " ".join(p[:1].upper() + p[1:].lower() for p in parts)
        return formatted or employee_id
