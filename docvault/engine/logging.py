"""
DocVault Logging — Structured JSONL event logs with an async flush queue.

Implements:
- FileLogger: Per-category log files with daily rotation
- AsyncLogQueue: In-memory queue with background flush (100ms / 50 entries)
- Log entry builders for fetch, cache, signing, storage and system events
- PerformanceTracker: per-operation durations with slow-operation warnings

Layout: {log_dir}/{category}/{YYYY-MM-DD}.jsonl
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, Iterator, List, Optional, Sequence

logger = logging.getLogger("docvault.engine.logging")

CATEGORIES = ("folders", "documents", "signing", "storage", "system")

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure the docvault.* stdlib loggers (idempotent)."""
    root = logging.getLogger("docvault")
    root.setLevel(level.upper())
    if not any(getattr(h, "_docvault", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._docvault = True  # type: ignore[attr-defined]
        root.addHandler(handler)


class LogEntry:
    """A structured log entry destined for one category file."""

    __slots__ = ("category", "data")

    def __init__(self, category: str, data: Dict[str, Any]):
        self.category = category if category in CATEGORIES else "system"
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Appends JSON lines to {log_dir}/{category}/{today}.jsonl.

    Thread-safe — one lock per file path.
    """

    def __init__(self, log_dir: str = "logs"):
        self._log_dir = Path(log_dir)
        self._file_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        for category in CATEGORIES:
            (self._log_dir / category).mkdir(parents=True, exist_ok=True)

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def write(self, entry: LogEntry) -> None:
        self.write_batch([entry])

    def write_batch(self, entries: List[LogEntry]) -> None:
        """Write entries grouped by destination file."""
        grouped: Dict[str, List[LogEntry]] = defaultdict(list)
        for entry in entries:
            grouped[str(self._resolve_path(entry.category))].append(entry)

        for file_path, batch in grouped.items():
            with self._file_locks[file_path]:
                with open(file_path, "a", encoding="utf-8") as f:
                    for entry in batch:
                        f.write(entry.to_json())
                        f.write("\n")

    def read(self, category: str, day: Optional[date] = None) -> List[Dict[str, Any]]:
        """Read back one day of entries for a category (oldest first)."""
        path = self._resolve_path(category, day)
        if not path.exists():
            return []
        entries: List[Dict[str, Any]] = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return entries

    def _resolve_path(self, category: str, day: Optional[date] = None) -> Path:
        day = day or date.today()
        return self._log_dir / category / f"{day.isoformat()}.jsonl"


class AsyncLogQueue:
    """
    Non-blocking push; a daemon thread flushes to the FileLogger every
    flush_interval_ms or once flush_batch_size entries are waiting.
    """

    def __init__(
        self,
        file_logger: FileLogger,
        flush_interval_ms: int = 100,
        flush_batch_size: int = 50,
        max_queue_size: int = 10000,
    ):
        self._logger = file_logger
        self._flush_interval = flush_interval_ms / 1000.0
        self._flush_batch_size = flush_batch_size
        self._queue: Queue[LogEntry] = Queue(maxsize=max_queue_size)
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._dropped_count = 0

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(
            target=self._flush_loop,
            name="docvault-log-flush",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread and drain whatever is left."""
        self._running = False
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._drain()
        if self._dropped_count:
            logger.warning(f"Log queue stopped with {self._dropped_count} dropped entries")

    def push(self, entry: LogEntry) -> bool:
        """Queue an entry. Returns False if it was dropped (queue full)."""
        try:
            self._queue.put_nowait(entry)
            return True
        except Full:
            self._dropped_count += 1
            return False

    def _flush_loop(self) -> None:
        while self._running:
            batch = self._collect_batch()
            if not batch:
                continue
            try:
                self._logger.write_batch(batch)
            except OSError as e:
                logger.error(f"Log flush error: {e}")

    def _collect_batch(self) -> List[LogEntry]:
        batch: List[LogEntry] = []
        deadline = time.monotonic() + self._flush_interval
        while len(batch) < self._flush_batch_size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                batch.append(self._queue.get(timeout=min(remaining, 0.01)))
            except Empty:
                if batch:
                    break
        return batch

    def _drain(self) -> None:
        batch: List[LogEntry] = []
        while True:
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break
        if batch:
            try:
                self._logger.write_batch(batch)
            except OSError as e:
                logger.error(f"Log drain error: {e}")

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def dropped_count(self) -> int:
        return self._dropped_count


# ---------------------------------------------------------------------------
# Log Entry Builders
# ---------------------------------------------------------------------------

def _base_entry(event: str, level: str, **extra: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
    }
    entry.update({k: v for k, v in extra.items() if v is not None})
    return entry


def log_fetch(
    scope: str,
    rows: int,
    pages: int,
    duration_ms: float,
    success: bool = True,
    truncated: bool = False,
    error: Optional[str] = None,
) -> LogEntry:
    """Row Fetcher run (one scope, all pages)."""
    data = _base_entry(
        "rows_fetched",
        "INFO" if success else "ERROR",
        scope=scope,
        rows=rows,
        pages=pages,
        duration_ms=round(duration_ms, 2),
        success=success,
        truncated=truncated,
        error=error,
    )
    return LogEntry("folders", data)


def log_cache_event(event: str, scope: str, key: Optional[str] = None, **details: Any) -> LogEntry:
    """Cache invalidation / clear / degraded-fallback events."""
    level = "WARNING" if "fallback" in event else "INFO"
    return LogEntry("folders", _base_entry(event, level, scope=scope, key=key, **details))


def log_signing(
    document_id: str,
    source: str,
    success: bool,
    duration_ms: float,
    attempts: Optional[List[Dict[str, str]]] = None,
) -> LogEntry:
    """Presigned URL resolution outcome."""
    data = _base_entry(
        "url_signed" if success else "signing_failed",
        "INFO" if success else "ERROR",
        document_id=document_id,
        source=source,
        success=success,
        duration_ms=round(duration_ms, 2),
        attempts=attempts or None,
    )
    return LogEntry("signing", data)


def log_storage_operation(
    operation: str,
    storage_key: str,
    success: bool,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None,
    **details: Any,
) -> LogEntry:
    """Upload / delete / compensating delete against the object store."""
    data = _base_entry(
        f"storage_{operation}",
        "INFO" if success else "ERROR",
        storage_key=storage_key,
        success=success,
        duration_ms=round(duration_ms, 2) if duration_ms is not None else None,
        error=error,
        **details,
    )
    return LogEntry("storage", data)


def log_document_event(event: str, document_id: Optional[str], **details: Any) -> LogEntry:
    """Document metadata mutations (insert/delete)."""
    return LogEntry("documents", _base_entry(event, "INFO", document_id=document_id, **details))


def log_system_event(event: str, level: str = "INFO", details: Optional[Dict[str, Any]] = None) -> LogEntry:
    """Startup, shutdown, refresh."""
    return LogEntry("system", _base_entry(event, level, details=details))


# ---------------------------------------------------------------------------
# Performance tracking
# ---------------------------------------------------------------------------

class PerformanceTracker:
    """
    Keeps recent durations per operation and warns on slow ones.

    thresholds_ms is (moderate, slow, very_slow).
    """

    def __init__(self, thresholds_ms: Sequence[int] = (500, 1000, 2000), max_samples: int = 200):
        moderate, slow, very_slow = sorted(thresholds_ms)[:3]
        self._moderate = moderate
        self._slow = slow
        self._very_slow = very_slow
        self._max_samples = max_samples
        self._samples: Dict[str, List[float]] = defaultdict(list)

    def record(self, operation: str, duration_ms: float) -> None:
        samples = self._samples[operation]
        samples.append(duration_ms)
        if len(samples) > self._max_samples:
            del samples[: len(samples) - self._max_samples]

        if duration_ms > self._very_slow:
            logger.warning(f"Very slow operation: {operation} took {duration_ms:.2f}ms")
        elif duration_ms > self._slow:
            logger.warning(f"Slow operation: {operation} took {duration_ms:.2f}ms")
        elif duration_ms > self._moderate:
            logger.info(f"Moderate operation: {operation} took {duration_ms:.2f}ms")

    @contextmanager
    def track(self, operation: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record(operation, (time.perf_counter() - start) * 1000.0)

    def summary(self) -> Dict[str, Dict[str, float]]:
        out: Dict[str, Dict[str, float]] = {}
        for operation, samples in self._samples.items():
            if samples:
                out[operation] = {
                    "count": len(samples),
                    "avg_ms": round(sum(samples) / len(samples), 2),
                    "max_ms": round(max(samples), 2),
                }
        return out

    def reset(self) -> None:
        self._samples.clear()


# ---------------------------------------------------------------------------
# Convenience: Global Log Queue Singleton
# ---------------------------------------------------------------------------

_global_queue: Optional[AsyncLogQueue] = None


def init_logging(
    log_dir: str = "logs",
    flush_interval_ms: int = 100,
    flush_batch_size: int = 50,
    max_queue_size: int = 10000,
) -> AsyncLogQueue:
    """Initialize and start the global structured-log queue."""
    global _global_queue
    if _global_queue is not None:
        _global_queue.stop()
    _global_queue = AsyncLogQueue(
        file_logger=FileLogger(log_dir=log_dir),
        flush_interval_ms=flush_interval_ms,
        flush_batch_size=flush_batch_size,
        max_queue_size=max_queue_size,
    )
    _global_queue.start()
    return _global_queue


def get_log_queue() -> Optional[AsyncLogQueue]:
    return _global_queue


def log(entry: LogEntry) -> bool:
    """Push an entry to the global queue. A no-op until init_logging() ran."""
    if _global_queue is None:
        return False
    return _global_queue.push(entry)


def shutdown_logging() -> None:
    """Flush and stop the global queue."""
    global _global_queue
    if _global_queue:
        _global_queue.stop()
        _global_queue = None
