#!/usr/bin/env python3
"""Structured JSONL event log for remotehouse.

Events land in ``{root_dir}/logs/{category}/{YYYY-MM-DD}.jsonl`` where the
category is the first dotted segment of the event type (``service.request``
goes to ``logs/service/``). ``EventLog.emit`` never raises: a broken log
directory must not turn a served request into a failed one.
"""

import json
import math
import os
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

LogLevel = Literal["debug", "info", "warning", "error"]

_SEVERITY = {"debug": 10, "info": 20, "warning": 30, "error": 40}

# Search responses can carry up to 1000 results; only the head is logged
RESULTS_CAP = 20

RETENTION_SWEEP_INTERVAL_S = 24 * 3600
_SWEEP_STAMP = ".last_sweep"

_NOT_CATEGORY_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_APPEND_FLAGS = os.O_CREAT | os.O_WRONLY | os.O_APPEND | getattr(os, "O_NOFOLLOW", 0)


class LoggingSettings(BaseModel):
    """The ``logging`` section of remotehouse-config.json."""
    model_config = ConfigDict(extra="ignore")
    enabled: bool = False
    level: LogLevel = "info"
    retention_days: int = Field(14, ge=0)

    @field_validator("level", mode="before")
    @classmethod
    def _lowercase_level(cls, value):
        return value.lower() if isinstance(value, str) else value


def event_category(event_type) -> str:
    """Directory name for *event_type*: its first segment, path-safe."""
    head = str(event_type).partition(".")[0]
    return _NOT_CATEGORY_CHARS.sub("", head)[:64] or "unknown"


def _iso(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _encode_fallback(obj):
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    return str(obj)


class EventLog:
    """Append-only event sink rooted at ``{root_dir}/logs``.

    Inactive (every call a no-op) unless *settings* enables it and a
    *root_dir* is given.
    """

    def __init__(self, root_dir=None, settings: Optional[LoggingSettings] = None):
        self.settings = settings or LoggingSettings()
        self.logs_dir = Path(root_dir) / "logs" if root_dir else None

    @property
    def active(self) -> bool:
        return self.settings.enabled and self.logs_dir is not None

    def wants(self, level: str) -> bool:
        return _SEVERITY.get(level, _SEVERITY["info"]) >= _SEVERITY[self.settings.level]

    def emit(self, event_type: str, data: Optional[dict] = None, *,
             level: LogLevel = "info", op: str = "", repo: str = "",
             duration_ms: Optional[float] = None, error: Optional[dict] = None) -> None:
        if not self.active or not self.wants(level):
            return
        now = datetime.now(timezone.utc)
        entry = {
            "schema_version": 1,
            "timestamp": _iso(now),
            "event_type": str(event_type),
            "level": level if level in _SEVERITY else "info",
            "op": str(op),
            "repo": str(repo),
            "duration_ms": _finite_or_none(duration_ms),
            "data": _capped(data),
            "error": error,
        }
        try:
            self._append(event_category(event_type), f"{now:%Y-%m-%d}.jsonl", entry)
        except (OSError, TypeError, ValueError):
            return
        self.sweep()

    def _append(self, category: str, file_name: str, entry: dict) -> None:
        line = json.dumps(entry, ensure_ascii=False, separators=(",", ":"),
                          default=_encode_fallback, allow_nan=False) + "\n"
        directory = self.logs_dir / category
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        # A symlinked category directory would redirect writes elsewhere
        if directory.is_symlink() or directory.resolve().parent != self.logs_dir.resolve():
            return
        fd = os.open(str(directory / file_name), _APPEND_FLAGS, 0o600)
        try:
            # One write() on an O_APPEND fd keeps concurrent lines whole
            os.write(fd, line.encode("utf-8"))
        finally:
            os.close(fd)

    def sweep(self, force: bool = False) -> int:
        """Delete log files older than ``retention_days``. Returns files removed.

        Runs at most once per RETENTION_SWEEP_INTERVAL_S unless *force*.
        ``retention_days == 0`` keeps everything.
        """
        days = self.settings.retention_days
        if not self.active or days == 0 or not self.logs_dir.is_dir():
            return 0
        stamp = self.logs_dir / _SWEEP_STAMP
        if not force and _fresh(stamp):
            return 0

        cutoff = time.time() - days * 86400
        removed = 0
        for log_file in self.logs_dir.glob("*/*.jsonl"):
            try:
                if log_file.is_symlink() or log_file.parent.is_symlink():
                    continue
                if log_file.stat().st_mtime < cutoff:
                    log_file.unlink()
                    removed += 1
            except OSError:
                continue
        try:
            if stamp.is_symlink():
                stamp.unlink()
            stamp.touch(mode=0o600)
        except OSError:
            pass
        return removed


def _fresh(stamp: Path) -> bool:
    try:
        if stamp.is_symlink():
            return False
        return time.time() - stamp.stat().st_mtime < RETENTION_SWEEP_INTERVAL_S
    except OSError:
        return False


def _finite_or_none(value) -> Optional[float]:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return value
    return None


def _capped(data) -> dict:
    if not isinstance(data, dict):
        return {}
    results = data.get("results")
    if isinstance(results, list) and len(results) > RESULTS_CAP:
        data = dict(data)
        data["results"] = results[:RESULTS_CAP]
        data["results_omitted"] = len(results) - RESULTS_CAP
    return data
