#!/usr/bin/env python3
"""Repository search script: substring search over stored records.

Walks the data directory (or --path beneath it), parses every *.json
record and keeps those whose --field value contains --query,
case-insensitively. Unparsable records are skipped, never fatal.

Usage (working directory = repository root):
  python3 search.py --query inception [--field title] [--path movies]
                    [--limit 100] [--offset 0]

Output: {"success": true, "results": [...], "count": int, "total": int,
         "query": str, "field": str}
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

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
    warn,
)


def iter_record_files(root: Path):
    """Yield *.json files under *root* in sorted order, skipping symlinks."""
    for entry in sorted(root.iterdir()):
        if entry.is_symlink():
            continue
        if entry.is_dir():
            yield from iter_record_files(entry)
        elif entry.suffix == ".json" and entry.is_file():
            yield entry


def _field_text(value) -> Optional[str]:
    # Falsy values (false, 0, "") never match; true is searched as "true".
    # Lists and objects are not searchable.
    if not value:
        return None
    if value is True:
        return "true"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return None


def search(params: dict, data_dir: Path) -> dict:
    """Search records under *data_dir*. See module docstring for params."""
    query = params.get("query")
    field = params.get("field") or "title"
    if not query or not isinstance(query, str):
        return failure("Invalid query parameter", results=[], count=0)
    if not is_identifier(field):
        return failure("Invalid field parameter", results=[], count=0)
    if not data_dir.is_dir():
        return failure("Data directory not found", CODE_IO_ERROR, results=[], count=0)

    root = data_dir
    sub_path = params.get("path")
    if sub_path:
        parts = str(sub_path).strip("/").split("/")
        if not all(is_identifier(p) for p in parts):
            return failure("Invalid path", results=[], count=0)
        root = data_dir.joinpath(*parts)
        if not is_contained(root, data_dir):
            return failure("Invalid path: directory traversal attempt", results=[], count=0)
        if not root.is_dir():
            return failure("Path not found", CODE_NOT_FOUND, results=[], count=0)

    needle = query.lower()
    matches = []
    try:
        for record_file in iter_record_files(root):
            try:
                with open(record_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
                warn(f"skipped unreadable record {record_file.name}: {e}")
                continue
            if not isinstance(data, dict):
                continue
            text = _field_text(data.get(field))
            if not text or needle not in text.lower():
                continue
            rel = relative_path(record_file, data_dir)
            result = {
                "id": data.get("id") or rel,
                "title": data.get("title") or "Untitled",
                "description": data.get("description") or "",
                "path": rel,
            }
            result.update(data)
            matches.append(result)
    except OSError as e:
        return failure(str(e), CODE_IO_ERROR, results=[], count=0)

    offset = params.get("offset") or 0
    limit = params.get("limit")
    page = matches[offset:offset + limit] if limit else matches[offset:]
    return {
        "success": True,
        "results": page,
        "count": len(page),
        "total": len(matches),
        "query": query,
        "field": field,
    }


def main():
    parser = argparse.ArgumentParser(description="Search repository records.")
    parser.add_argument("--query", required=True)
    parser.add_argument("--field", default="title")
    parser.add_argument("--path", default=None)
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--offset", type=int, default=0)
    args = parser.parse_args()

    return emit_result(search(vars(args), default_data_dir()))


if __name__ == "__main__":
    sys.exit(main())
