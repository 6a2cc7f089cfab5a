"""DocVault Engine — configuration, errors, caching, logging and health."""

from docvault.engine.cache import CacheManager, CacheScope, TTLCache  # noqa: F401
from docvault.engine.config import DocVaultConfig, get_config, load_config  # noqa: F401
from docvault.engine.errors import DocVaultError  # noqa: F401

__all__ = [
    "CacheManager",
    "CacheScope",
    "TTLCache",
    "DocVaultConfig",
    "get_config",
    "load_config",
    "DocVaultError",
]
