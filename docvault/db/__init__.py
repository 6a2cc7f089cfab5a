"""DocVault relational layer — table definitions and the RelationalSource adapter."""

from docvault.db.source import RelationalSource, RowFilter, SqlAlchemySource  # noqa: F401
from docvault.db.tables import build_tables  # noqa: F401

__all__ = [
    "RelationalSource",
    "RowFilter",
    "SqlAlchemySource",
    "build_tables",
]
