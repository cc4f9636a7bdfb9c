"""
TreeVault Event Log — Structured JSON file-based logging with async queue.

Implements:
- FileLogger: Per-object-type, per-category JSONL files (daily rotation)
- AsyncLogQueue: In-memory queue with background flush (interval / batch size)
- Log entry builders for folder, file, permission and access events

Layout: {log_dir}/{object_type}/{category}/{YYYY-MM-DD}.jsonl
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from datetime import date, datetime, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("treevault.engine.logging")

# Valid object types and their permitted categories
OBJECT_TYPE_CATEGORIES = {
    "folders": ["execution", "security"],
    "files": ["execution", "security"],
    "permissions": ["execution", "security"],
    "system": ["execution", "security"],
}


class LogEntry:
    """A structured log entry destined for a specific file."""

    __slots__ = ("object_type", "category", "data")

    def __init__(self, object_type: str, category: str, data: Dict[str, Any]):
        self.object_type = object_type
        self.category = category
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Writes structured JSON log entries to per-object-type, per-category files.

    Thread-safe — uses a lock per file path.
    """

    def __init__(self, log_dir: str = "logs"):
        self._log_dir = Path(log_dir)
        self._file_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._ensure_directories()

    def _ensure_directories(self) -> None:
        for obj_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for cat in categories:
                (self._log_dir / obj_type / cat).mkdir(parents=True, exist_ok=True)

    def write(self, entry: LogEntry) -> None:
        """Write a single log entry to the appropriate file."""
        self.write_batch([entry])

    def write_batch(self, entries: List[LogEntry]) -> None:
        """Write a batch of entries, grouped by file path."""
        grouped: Dict[str, List[LogEntry]] = defaultdict(list)
        for entry in entries:
            grouped[str(self._resolve_path(entry.object_type, entry.category))].append(entry)

        for file_path, batch in grouped.items():
            with self._file_locks[file_path]:
                with open(file_path, "a", encoding="utf-8") as f:
                    for entry in batch:
                        f.write(entry.to_json())
                        f.write("\n")

    def _resolve_path(self, object_type: str, category: str) -> Path:
        if object_type not in OBJECT_TYPE_CATEGORIES:
            object_type = "system"
        today = date.today().isoformat()
        return self._log_dir / object_type / category / f"{today}.jsonl"

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def read_today(self, object_type: str, category: str) -> List[Dict[str, Any]]:
        """Read today's entries for one object_type/category (oldest first)."""
        path = self._resolve_path(object_type, category)
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


class AsyncLogQueue:
    """
    In-memory queue with a background flush thread.

    Entries are pushed non-blocking. The flush thread writes to the FileLogger
    every flush_interval_ms or when flush_batch_size entries accumulate,
    whichever comes first.
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
        self._flush_thread: Optional[threading.Thread] = None
        self._dropped_count = 0

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            name="treevault-log-flush",
            daemon=True,
        )
        self._flush_thread.start()
        logger.info("Async log queue started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread and drain remaining entries."""
        self._running = False
        if self._flush_thread and self._flush_thread.is_alive():
            self._flush_thread.join(timeout=timeout)
        self._drain()
        logger.info(f"Async log queue stopped (dropped: {self._dropped_count})")

    def push(self, entry: LogEntry) -> bool:
        """Queue an entry. Returns False if dropped because the queue is full."""
        try:
            self._queue.put_nowait(entry)
            return True
        except Full:
            self._dropped_count += 1
            return False

    def _flush_loop(self) -> None:
        while self._running:
            batch = self._collect_batch()
            if batch:
                try:
                    self._logger.write_batch(batch)
                except OSError as e:
                    logger.error(f"Log flush error: {e}")
            else:
                time.sleep(self._flush_interval)

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
        while not self._queue.empty():
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

def _base_entry(
    event: str,
    level: str,
    resource_id: Optional[str] = None,
    user_id: Optional[str] = None,
    workspace_id: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
    }
    if resource_id is not None:
        entry["resource_id"] = resource_id
    if user_id is not None:
        entry["user_id"] = user_id
    if workspace_id is not None:
        entry["workspace_id"] = workspace_id
    entry.update({k: v for k, v in extra.items() if v is not None})
    return entry


def log_folder_operation(
    operation: str,
    folder_id: str,
    workspace_id: Optional[str] = None,
    user_id: Optional[str] = None,
    **details: Any,
) -> LogEntry:
    """Build a folder lifecycle entry (created/updated/deleted)."""
    data = _base_entry(
        event=f"folder_{operation}",
        level="INFO",
        resource_id=folder_id,
        user_id=user_id,
        workspace_id=workspace_id,
        **details,
    )
    return LogEntry("folders", "execution", data)


def log_file_operation(
    operation: str,
    file_id: str,
    workspace_id: Optional[str] = None,
    user_id: Optional[str] = None,
    **details: Any,
) -> LogEntry:
    """Build a file lifecycle entry (upload_started/completed/updated/deleted/copied)."""
    data = _base_entry(
        event=f"file_{operation}",
        level="INFO",
        resource_id=file_id,
        user_id=user_id,
        workspace_id=workspace_id,
        **details,
    )
    return LogEntry("files", "execution", data)


def log_permission_change(
    operation: str,
    user_id: str,
    access_levels: Optional[Iterable[str]] = None,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    propagated_count: Optional[int] = None,
    permission_id: Optional[str] = None,
) -> LogEntry:
    """Build a grant/revoke/purge entry."""
    data = _base_entry(
        event=f"permission_{operation}",
        level="INFO",
        resource_id=target_id,
        user_id=user_id,
        target_type=target_type,
        access_levels=sorted(access_levels) if access_levels is not None else None,
        propagated_count=propagated_count,
        permission_id=permission_id,
    )
    return LogEntry("permissions", "security", data)


def log_access_decision(
    user_id: str,
    resource_type: str,
    resource_id: str,
    action: str,
    allowed: bool,
    tier: Optional[str] = None,
) -> LogEntry:
    """Build an authorization decision entry. Denials are logged at WARNING."""
    data = _base_entry(
        event="access_allowed" if allowed else "access_denied",
        level="INFO" if allowed else "WARNING",
        resource_id=resource_id,
        user_id=user_id,
        resource_type=resource_type,
        action=action,
        tier=tier,
    )
    object_type = "folders" if resource_type == "folder" else "files"
    return LogEntry(object_type, "security", data)


def log_system_event(
    event: str,
    level: str = "INFO",
    details: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Build a system event entry (startup, shutdown, config changes)."""
    data = _base_entry(event=event, level=level)
    if details:
        data["details"] = details
    return LogEntry("system", "execution", data)


# ---------------------------------------------------------------------------
# Global Log Queue Singleton
# ---------------------------------------------------------------------------

_global_queue: Optional[AsyncLogQueue] = None


def init_logging(
    log_dir: str = "logs",
    flush_interval_ms: int = 100,
    flush_batch_size: int = 50,
    max_queue_size: int = 10000,
) -> AsyncLogQueue:
    """Initialize and start the global async log queue."""
    global _global_queue
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
    """Push a log entry to the global queue. Non-blocking; no-op when not initialized."""
    if _global_queue is None:
        logger.debug(f"Log queue not initialized — {entry.data.get('event')} not persisted")
        return False
    return _global_queue.push(entry)


def shutdown_logging() -> None:
    """Flush and stop the global log queue."""
    global _global_queue
    if _global_queue:
        _global_queue.stop()
        _global_queue = None
