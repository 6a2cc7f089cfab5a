"""
DocVault Tables — SQLAlchemy Core definitions of the two tables the folder
layer reads and writes.

1. employee_documents — one row per stored object (file_path = storage key)
2. employee_table     — employee names and their company

Table names come from docvault.yaml (database.documents_table /
database.employees_table) so the same definitions serve every deployment.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Dict

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    Text,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def build_tables(
    metadata: MetaData,
    documents_table: str = "employee_documents",
    employees_table: str = "employee_table",
) -> Dict[str, Table]:
    """Define both tables on metadata and return them keyed by table name."""
    documents = Table(
        documents_table,
        metadata,
        Column("id", String(36), primary_key=True, default=_new_id),
        Column("employee_id", String(100), nullable=True),
        Column("document_type", String(100), nullable=True),
        Column("file_name", String(500), nullable=False),
        Column("file_path", String(1000), nullable=False),
        Column("file_url", Text, nullable=True),
        Column("file_size", BigInteger, nullable=True),
        Column("file_type", String(100), nullable=True),
        Column("mime_type", String(200), nullable=True),
        Column("notes", Text, nullable=True),
        Column("is_active", Boolean, default=True, nullable=False),
        Column("uploaded_at", DateTime(timezone=True), default=_utcnow, nullable=True),
        Index(f"idx_{documents_table}_employee", "employee_id"),
        Index(f"idx_{documents_table}_path", "file_path"),
        Index(f"idx_{documents_table}_uploaded", "uploaded_at"),
    )

    employees = Table(
        employees_table,
        metadata,
        Column("employee_id", String(100), primary_key=True),
        Column("name", String(300), nullable=True),
        Column("company_name", String(300), nullable=True),
        Index(f"idx_{employees_table}_company", "company_name"),
    )

    return {documents_table: documents, employees_table: employees}
