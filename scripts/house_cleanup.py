#!/usr/bin/env python3
"""Background purge of expired repository records.

A record expires when it carries an ``expires_at`` ISO-8601 timestamp in
the past. ``CleanupScheduler`` owns its worker thread: ``start()`` hands
back a handle and ``handle.shutdown()`` stops it. Several schedulers can
coexist (one per repositories root, one per test).
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from house_logger import EventLog
from house_store import DATA_DIR_NAME, is_contained, warn
from house_validators import valid_repository_name

DEFAULT_INTERVAL_S = 300.0
DEFAULT_INITIAL_DELAY_S = 30.0


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string; naive values are taken as UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def purge_expired(data_dir: Path, now: Optional[datetime] = None) -> int:
    """Delete every record under *data_dir* whose ``expires_at`` has passed.

    Unreadable records and records without ``expires_at`` are left alone.
    Returns the number of files removed.
    """
    now = now or datetime.now(timezone.utc)
    data_dir = Path(data_dir)
    if not data_dir.is_dir():
        return 0

    removed = 0
    for record_file in sorted(data_dir.rglob("*.json")):
        if record_file.is_symlink() or not record_file.is_file():
            continue
        if not is_contained(record_file, data_dir):
            continue
        try:
            with open(record_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError):
            continue
        if not isinstance(data, dict):
            continue
        expires_at = parse_timestamp(data.get("expires_at"))
        if expires_at is None or expires_at >= now:
            continue
        try:
            record_file.unlink()
            removed += 1
        except FileNotFoundError:
            pass
    return removed


def iter_data_dirs(repos_root: Path):
    root = Path(repos_root)
    if not root.is_dir():
        return
    for repo_dir in sorted(root.iterdir()):
        if repo_dir.is_symlink() or not repo_dir.is_dir():
            continue
        if not valid_repository_name(repo_dir.name):
            continue
        data_dir = repo_dir / DATA_DIR_NAME
        if data_dir.is_dir():
            yield repo_dir.name, data_dir


class CleanupHandle:
    """Returned by ``CleanupScheduler.start()``."""

    def __init__(self, thread: threading.Thread, stop_event: threading.Event):
        self._thread = thread
        self._stop = stop_event

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout)


class CleanupScheduler:
    def __init__(self, repos_root, interval_s: float = DEFAULT_INTERVAL_S,
                 initial_delay_s: float = DEFAULT_INITIAL_DELAY_S,
                 log: Optional[EventLog] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.repos_root = Path(repos_root)
        self.interval_s = interval_s
        self.initial_delay_s = max(0.0, initial_delay_s)
        self.log = log or EventLog()
        self.clock = clock
        self._handle: Optional[CleanupHandle] = None
        self._lock = threading.Lock()

    def run_once(self) -> dict:
        """Purge every repository once. Returns {repo_name: removed_count}."""
        now = self.clock()
        summary = {}
        for repo_name, data_dir in iter_data_dirs(self.repos_root):
            try:
                summary[repo_name] = purge_expired(data_dir, now)
            except OSError as e:
                warn(f"cleanup of {repo_name} failed: {e}")
                self.log.emit("cleanup.error", {}, level="error", repo=repo_name,
                              error={"type": type(e).__name__, "message": str(e)})
        removed = sum(summary.values())
        if removed:
            self.log.emit("cleanup.purge", {"removed": removed, "by_repo": summary})
        return summary

    def _loop(self, stop_event: threading.Event) -> None:
        if stop_event.wait(self.initial_delay_s):
            return
        while not stop_event.is_set():
            self.run_once()
            if stop_event.wait(self.interval_s):
                return

    def start(self) -> CleanupHandle:
        """Start the worker thread. Starting twice returns the live handle."""
        with self._lock:
            if self._handle is not None and self._handle.running:
                return self._handle
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._loop, args=(stop_event,),
                name="remotehouse-cleanup", daemon=True,
            )
            self._handle = CleanupHandle(thread, stop_event)
            thread.start()
            return self._handle

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            handle, self._handle = self._handle, None
        if handle is not None:
            handle.shutdown(timeout)
