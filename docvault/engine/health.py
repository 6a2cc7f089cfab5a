"""
DocVault Health Check — Connectivity checks for the collaborators the
folder service depends on.

Provides:
    - HealthCheckService: database / object store / signing endpoint probes
    - Consecutive-failure thresholds before a check flips to unhealthy
    - A platform summary for the `docvault health` command
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy import text

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from docvault.storage.object_store import ObjectStore

logger = logging.getLogger("docvault.engine.health")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    """Result of a single probe."""
    name: str
    status: HealthStatus
    latency_ms: float = 0.0
    message: str = ""
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
            "message": self.message,
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass
class HealthCheckConfig:
    timeout: float = 10.0
    unhealthy_threshold: int = 1  # consecutive failures before UNHEALTHY


@dataclass
class _RegisteredCheck:
    name: str
    check_fn: Callable[[], Any]
    config: HealthCheckConfig
    consecutive_failures: int = 0


class HealthCheckService:
    """
    Usage:
        service = HealthCheckService()
        service.register_database_check("database", engine)
        service.register_object_store_check("object_store", store, "health/probe")
        summary = service.get_platform_health() after await service.check_all()
    """

    def __init__(self):
        self._checks: Dict[str, _RegisteredCheck] = {}
        self._results: Dict[str, HealthCheckResult] = {}

    def register_check(
        self,
        name: str,
        check_fn: Callable[[], Any],
        config: Optional[HealthCheckConfig] = None,
    ) -> None:
        """
        Register a probe. check_fn may be sync or async and returns a truthy
        value when the collaborator is reachable.
        """
        self._checks[name] = _RegisteredCheck(name, check_fn, config or HealthCheckConfig())
        self._results[name] = HealthCheckResult(name=name, status=HealthStatus.UNKNOWN)
        logger.debug(f"Registered health check: {name}")

    def register_database_check(
        self,
        name: str,
        engine: "Engine",
        config: Optional[HealthCheckConfig] = None,
    ) -> None:
        """SELECT 1 through the SQLAlchemy engine, off the event loop."""

        def ping() -> bool:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True

        async def db_check() -> bool:
            return await asyncio.to_thread(ping)

        self.register_check(name, db_check, config)

    def register_object_store_check(
        self,
        name: str,
        store: "ObjectStore",
        probe_key: str = "__healthcheck__",
        config: Optional[HealthCheckConfig] = None,
    ) -> None:
        """An exists() round trip; a missing probe object still proves reachability."""

        async def store_check() -> bool:
            await store.exists(probe_key)
            return True

        self.register_check(name, store_check, config)

    def register_http_check(
        self,
        name: str,
        url: str,
        timeout: float = 5.0,
        config: Optional[HealthCheckConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Any response below 500 counts as reachable (signing routes reject bare GETs)."""

        async def http_check() -> bool:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                resp = await client.get(url)
                return resp.status_code < 500

        self.register_check(name, http_check, config)

    async def check(self, name: str) -> HealthCheckResult:
        registered = self._checks.get(name)
        if registered is None:
            return HealthCheckResult(
                name=name,
                status=HealthStatus.UNKNOWN,
                message=f"No health check registered for '{name}'",
            )

        start = time.monotonic()
        try:
            outcome = registered.check_fn()
            if inspect.isawaitable(outcome):
                outcome = await asyncio.wait_for(outcome, timeout=registered.config.timeout)
            healthy = bool(outcome)
            message = "OK" if healthy else "Check returned unhealthy"
        except asyncio.TimeoutError:
            healthy = False
            message = f"Timeout after {registered.config.timeout}s"
        except Exception as e:
            healthy = False
            message = str(e) or e.__class__.__name__
        latency_ms = (time.monotonic() - start) * 1000

        if healthy:
            registered.consecutive_failures = 0
            status = HealthStatus.HEALTHY
        else:
            registered.consecutive_failures += 1
            if registered.consecutive_failures >= registered.config.unhealthy_threshold:
                status = HealthStatus.UNHEALTHY
            else:
                status = HealthStatus.DEGRADED
            logger.warning(f"Health check '{name}' failed: {message}")

        result = HealthCheckResult(name=name, status=status, latency_ms=latency_ms, message=message)
        self._results[name] = result
        return result

    async def check_all(self) -> Dict[str, HealthCheckResult]:
        """Run every registered probe concurrently."""
        if self._checks:
            await asyncio.gather(*(self.check(name) for name in self._checks))
        return dict(self._results)

    def get_last_result(self, name: str) -> Optional[HealthCheckResult]:
        return self._results.get(name)

    def get_platform_health(self) -> Dict[str, Any]:
        """Overall status: healthy only when every probe is healthy."""
        results = dict(self._results)
        statuses = [r.status for r in results.values()]

        if all(s == HealthStatus.HEALTHY for s in statuses):
            overall = HealthStatus.HEALTHY
        elif any(s == HealthStatus.UNHEALTHY for s in statuses):
            overall = HealthStatus.UNHEALTHY
        else:
            overall = HealthStatus.DEGRADED

        return {
            "status": overall.value,
            "checks": {name: r.to_dict() for name, r in results.items()},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @property
    def registered_checks(self) -> List[str]:
        return list(self._checks.keys())
