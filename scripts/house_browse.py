#!/usr/bin/env python3
"""Repository browse script: depth-bounded tree view of the data directory.

Usage (working directory = repository root):
  python3 browse.py [--path movies] [--depth 3] [--limit 100] [--offset 0]

Output: {"success": true, "tree": {"files": [...], "directories": {...}},
         "count": int, "path": str, "depth": int}

Branches deeper than --depth are replaced by {"truncated": true}.
"""

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from house_store import (  # noqa: E402
    CODE_IO_ERROR,
    CODE_NOT_FOUND,
    default_data_dir,
    emit_result,
    failure,
    is_contained,
    is_identifier,
    relative_path,
)

DEFAULT_DEPTH = 3


def _modified(stat_result) -> str:
    return datetime.fromtimestamp(stat_result.st_mtime, tz=timezone.utc).strftime(
        "%Y-%m-%dT%H:%M:%S.%f"
    )[:-3] + "Z"


class _TreeBuilder:
    def __init__(self, data_dir: Path, limit=None, offset=0):
        self.data_dir = data_dir
        self.limit = limit
        self.offset = offset or 0
        self.count = 0

    def summarize(self, path: Path) -> dict:
        if path.suffix != ".json":
            return {"name": path.name, "type": "other"}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("record is not an object")
            st = path.stat()
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError, OSError):
            return {"name": path.name, "error": "Invalid JSON"}
        self.count += 1
        return {
            "name": path.name,
            "title": data.get("title") or path.name,
            "id": data.get("id") or relative_path(path, self.data_dir),
            "size": st.st_size,
            "modified": _modified(st),
        }

    def build(self, directory: Path, depth: int) -> dict:
        if depth <= 0:
            return {"truncated": True}
        try:
            entries = sorted(directory.iterdir())
        except OSError as e:
            return {"error": str(e)}

        files = [e for e in entries if not e.is_dir() and not e.is_symlink()]
        dirs = [e for e in entries if e.is_dir() and not e.is_symlink()]
        if self.limit:
            files = files[self.offset:self.offset + self.limit]
        elif self.offset:
            files = files[self.offset:]

        return {
            "files": [self.summarize(f) for f in files],
            "directories": {d.name: self.build(d, depth - 1) for d in dirs},
        }


def browse(params: dict, data_dir: Path) -> dict:
    """Build the tree rooted at ``params["path"]`` (default: the data dir)."""
    browse_path = params.get("path") or ""
    depth = params.get("depth") or DEFAULT_DEPTH

    if not data_dir.is_dir():
        return failure("Data directory not found", CODE_IO_ERROR, tree={}, count=0)

    target = data_dir
    if browse_path:
        parts = str(browse_path).strip("/").split("/")
        if not all(is_identifier(p) for p in parts):
            return failure("Invalid path", tree={}, count=0)
        target = data_dir.joinpath(*parts)
    if not is_contained(target, data_dir):
        return failure("Invalid path: directory traversal attempt", tree={}, count=0)
    if not target.is_dir():
        return failure("Path not found", CODE_NOT_FOUND, tree={}, count=0)

    builder = _TreeBuilder(data_dir, params.get("limit"), params.get("offset"))
    tree = builder.build(target, depth)
    return {
        "success": True,
        "tree": tree,
        "count": builder.count,
        "path": browse_path or "/",
        "depth": depth,
    }


def main():
    parser = argparse.ArgumentParser(description="Browse repository data.")
    parser.add_argument("--path", default=None)
    parser.add_argument("--depth", type=int, default=DEFAULT_DEPTH)
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--offset", type=int, default=0)
    args = parser.parse_args()

    return emit_result(browse(vars(args), default_data_dir()))


if __name__ == "__main__":
    sys.exit(main())
