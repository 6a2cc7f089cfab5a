"""
DocVault — Document folder resolution and caching.

Reconciles a flat, inconsistently-named object-storage key space against the
relational document table: paged row fetching, company/employee name
resolution, folder aggregation, TTL caches with in-flight coalescing and
presigned URL resolution.
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "storage", "documents"]
