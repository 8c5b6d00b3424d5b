#!/usr/bin/env python3
"""Repository insert script: validates a payload and files it as a record.

Each payload must carry a ``primary_index`` naming the directory it is
stored under. The record is written to
``data/<primary_index>/<primary_index>_<unixMillis>_<hex>.json``.

Usage (working directory = repository root):
  python3 insert.py --input '{"payload": {"primary_index": "movies", "title": "Inception"}}'

Output: {"success": true, "id": ..., "path": ..., "size": ...}
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

sys.path.insert(0, str(Path(__file__).resolve().parent))

try:
    from pydantic import BaseModel, ConfigDict, Field, ValidationError
except ImportError:
    print("ERROR: pydantic>=2.0 is required. Install: pip install 'pydantic>=2.0,<3.0'", file=sys.stderr)
    sys.exit(1)

from house_store import (  # noqa: E402
    CODE_IO_ERROR,
    DEFAULT_MAX_PAYLOAD_SIZE,
    create_with_fresh_id,
    default_data_dir,
    emit_result,
    failure,
    is_contained,
    is_identifier,
    load_input,
    now_utc,
    relative_path,
    warn,
)


class InsertRules(BaseModel):
    """Validation rules enforced on an incoming payload.

    ``allowed_characters`` is accepted for compatibility with older callers
    but never honoured: the primary index alphabet is fixed.
    """
    model_config = ConfigDict(extra="ignore")
    required_fields: list[str] = Field(default_factory=lambda: ["primary_index"])
    max_payload_size: int = Field(DEFAULT_MAX_PAYLOAD_SIZE, gt=0)
    allowed_characters: Optional[str] = None


def parse_rules(raw) -> tuple[Optional[InsertRules], Optional[str]]:
    """Returns (rules, error_msg)."""
    if raw is None:
        return InsertRules(), None
    try:
        rules = InsertRules.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(part) for part in first["loc"]) or "rules"
        return None, f"Invalid rules: {loc}: {first['msg']}"
    if rules.allowed_characters is not None:
        warn("rules.allowed_characters is ignored; primary_index alphabet is fixed")
    return rules, None


def _missing(payload: dict, field: str) -> bool:
    value = payload.get(field)
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


def insert(params: dict, data_dir: Path) -> dict:
    """Insert ``params["payload"]`` as a new record under *data_dir*."""
    if not data_dir.is_dir():
        return failure("Data directory not found", CODE_IO_ERROR)

    payload = params.get("payload")
    if not isinstance(payload, dict):
        return failure("Invalid payload: must be an object")

    rules, err = parse_rules(params.get("rules"))
    if err:
        return failure(err)

    # Size and required fields are checked before anything touches the disk
    try:
        payload_size = len(json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8"))
    except (TypeError, ValueError) as e:
        return failure(f"Invalid payload: {e}")
    if payload_size > rules.max_payload_size:
        return failure(
            f"Payload too large: {payload_size} bytes (max: {rules.max_payload_size})"
        )

    for field in rules.required_fields:
        if _missing(payload, field):
            return failure(f"Missing required field: {field}")

    primary_index = str(payload.get("primary_index", "")).strip()
    if not is_identifier(primary_index):
        return failure("Invalid primary_index: contains invalid characters")

    index_dir = data_dir / primary_index
    if not is_contained(index_dir, data_dir):
        return failure("Invalid path: directory traversal attempt")

    created_at = now_utc()
    # Generated id and created_at take precedence so the file name and the
    # stored id always agree.
    fields = {k: v for k, v in payload.items() if k not in ("id", "created_at")}

    def render(record_id: str) -> str:
        record = {"id": record_id, "created_at": created_at}
        record.update(fields)
        return json.dumps(record, indent=2, ensure_ascii=False) + "\n"

    try:
        index_dir.mkdir(parents=True, exist_ok=True)
        record_id, target, _ = create_with_fresh_id(index_dir, primary_index, ".json", render)
    except OSError as e:
        return failure(str(e), CODE_IO_ERROR)

    record = {"id": record_id, "created_at": created_at}
    record.update(fields)
    return {
        "success": True,
        "id": record_id,
        "path": relative_path(target, data_dir),
        "size": len(json.dumps(record, ensure_ascii=False, separators=(",", ":")).encode("utf-8")),
    }


def main():
    parser = argparse.ArgumentParser(description="Insert a record into the repository.")
    parser.add_argument("--input", help="JSON object: {payload, rules?}")
    args = parser.parse_args()

    params, err = load_input(args.input)
    if err:
        return emit_result(err)
    return emit_result(insert(params, default_data_dir()))


if __name__ == "__main__":
    sys.exit(main())
