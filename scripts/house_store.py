#!/usr/bin/env python3
"""Record store conventions shared by the remotehouse repository scripts.

Layout under a repository's data directory:

  data/<primary_index>/<record_id>.json
  data/<primary_index>/comments/<sanitized_email>/<comment_id>.md

Every script runs with the repository directory as its working directory,
so the data directory is always ``./data``. This module is copied next to
the operation scripts when a repository is scaffolded and must stay free
of third-party imports.

No external dependencies (stdlib only).
"""

import json
import os
import re
import secrets
import sys
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DATA_DIR_NAME = "data"
COMMENTS_DIR_NAME = "comments"

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
MAX_IDENTIFIER_LENGTH = 128

DEFAULT_MAX_PAYLOAD_SIZE = 1024 * 1024  # 1 MiB

# Attempts at drawing a fresh id when the target file already exists
_ID_ATTEMPTS = 5

# Result codes consumed by the orchestration layer to pick a status
CODE_INVALID_INPUT = "invalid_input"
CODE_NOT_FOUND = "not_found"
CODE_IO_ERROR = "io_error"


# ---------------------------------------------------------------------------
# Identifiers and timestamps
# ---------------------------------------------------------------------------

def now_utc() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def is_identifier(value) -> bool:
    """True for a non-empty, bounded ``[A-Za-z0-9_.-]`` token that is not all dots."""
    if not isinstance(value, str):
        return False
    if not value or len(value) > MAX_IDENTIFIER_LENGTH:
        return False
    if not value.strip("."):
        return False
    return bool(IDENTIFIER_PATTERN.match(value))


def generate_id(prefix: Optional[str] = None) -> str:
    """Build ``[<prefix>_]<unixMillis>_<8 hex chars>``."""
    stamp = f"{int(time.time() * 1000)}_{secrets.token_hex(4)}"
    return f"{prefix}_{stamp}" if prefix else stamp


def sanitize_email(email: str) -> str:
    """Lowercase and replace every char outside ``[a-z0-9._-]`` with ``_``."""
    return re.sub(r"[^a-z0-9._-]", "_", email.strip().lower())


# ---------------------------------------------------------------------------
# Path containment
# ---------------------------------------------------------------------------

def is_contained(path: Path, data_dir: Path) -> bool:
    """Check that *path* resolves inside *data_dir* (symlinks followed)."""
    try:
        path.resolve().relative_to(data_dir.resolve())
        return True
    except ValueError:
        return False


def relative_path(path: Path, data_dir: Path) -> str:
    """Path of *path* relative to *data_dir*, always with ``/`` separators."""
    return path.resolve().relative_to(data_dir.resolve()).as_posix()


def default_data_dir() -> Path:
    return Path.cwd() / DATA_DIR_NAME


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def write_new_file(target: Path, content: str) -> None:
    """Write *content* to *target* atomically, refusing to replace a file.

    The content goes to a unique tmp file first and is then hard-linked
    into place, so readers never observe a partial record and an existing
    file is never clobbered (raises FileExistsError).
    """
    fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), suffix=".tmp", prefix=".rh-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.link(tmp_path, str(target))
    finally:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass


def create_with_fresh_id(directory: Path, prefix: Optional[str], suffix: str,
                         render) -> tuple[str, Path, str]:
    """Create ``<directory>/<id><suffix>`` with a newly drawn id.

    *render* maps the id to the file content. Returns (id, path, content).
    """
    last_error = None
    for _ in range(_ID_ATTEMPTS):
        new_id = generate_id(prefix)
        target = directory / f"{new_id}{suffix}"
        content = render(new_id)
        try:
            write_new_file(target, content)
            return new_id, target, content
        except FileExistsError as e:
            last_error = e
            warn(f"id collision on {target.name}, drawing a new id")
    raise FileExistsError(f"Could not allocate a unique id in {directory.name}: {last_error}")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

def failure(error: str, code: str = CODE_INVALID_INPUT, **extra) -> dict:
    result = {"success": False, "error": error, "code": code}
    result.update(extra)
    return result


def warn(message: str) -> None:
    print(f"[WARN] {message}", file=sys.stderr)


def load_input(raw: Optional[str]) -> tuple[Optional[dict], Optional[dict]]:
    """Parse the ``--input`` JSON blob. Returns (input, error_result)."""
    if raw is None:
        return None, failure("Missing --input argument")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        return None, failure(f"Invalid JSON input: {e}")
    if not isinstance(data, dict):
        return None, failure("Invalid input: must be a JSON object")
    return data, None


def emit_result(result: dict) -> int:
    """Print the single JSON document a script must produce. Returns exit code 0."""
    print(json.dumps(result, ensure_ascii=False, default=str))
    return 0
