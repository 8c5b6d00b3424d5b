#!/usr/bin/env python3
"""Repository remove script: deletes records from a primary index.

Input: {"primary_index": str, "id"?: str}
  - with id: removes exactly data/<primary_index>/<id>.json
  - without id: removes every *.json directly under data/<primary_index>/
    and then the directory itself if nothing else is left in it

Output: {"success": true, "removed": int, "message": str}
"""

import argparse
import sys
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
    load_input,
    warn,
)


def _remove_all(index_dir: Path) -> int:
    removed = 0
    for entry in sorted(index_dir.iterdir()):
        if entry.suffix != ".json" or entry.is_dir():
            continue
        # Only files directly inside the index directory
        if not is_contained(entry, index_dir):
            warn(f"skipping {entry.name}: resolves outside the index directory")
            continue
        try:
            entry.unlink()
            removed += 1
        except FileNotFoundError:
            # Removed concurrently by another invocation
            continue

    try:
        next(index_dir.iterdir())
    except StopIteration:
        try:
            index_dir.rmdir()
        except OSError as e:
            # A concurrent insert may have repopulated it
            warn(f"index directory kept: {e}")
    return removed


def remove(params: dict, data_dir: Path) -> dict:
    """Remove one record, or every record of a primary index."""
    if not data_dir.is_dir():
        return failure("Data directory not found", CODE_IO_ERROR)

    primary_index = params.get("primary_index")
    if not primary_index or not isinstance(primary_index, str):
        return failure("Missing required parameter: primary_index")
    primary_index = primary_index.strip()
    if not is_identifier(primary_index):
        return failure("Invalid primary_index: contains invalid characters")

    record_id = params.get("id")
    if record_id is not None and (not isinstance(record_id, str) or not is_identifier(record_id.strip())):
        return failure("Invalid id: contains invalid characters")

    index_dir = data_dir / primary_index
    if not is_contained(index_dir, data_dir):
        return failure("Invalid path: directory traversal attempt")
    if not index_dir.is_dir():
        return failure("Index directory not found", CODE_NOT_FOUND)

    try:
        if record_id is not None:
            record_id = record_id.strip()
            target = index_dir / f"{record_id}.json"
            if not is_contained(target, data_dir):
                return failure("Invalid path: directory traversal attempt")
            try:
                target.unlink()
            except FileNotFoundError:
                return failure(f"Record not found: {record_id}", CODE_NOT_FOUND)
            removed = 1
        else:
            removed = _remove_all(index_dir)
    except OSError as e:
        return failure(str(e), CODE_IO_ERROR)

    return {
        "success": True,
        "removed": removed,
        "message": f"Successfully removed {removed} file(s)",
    }


def main():
    parser = argparse.ArgumentParser(description="Remove records from the repository.")
    parser.add_argument("--input", help="JSON object: {primary_index, id?}")
    args = parser.parse_args()

    params, err = load_input(args.input)
    if err:
        return emit_result(err)
    return emit_result(remove(params, default_data_dir()))


if __name__ == "__main__":
    sys.exit(main())
