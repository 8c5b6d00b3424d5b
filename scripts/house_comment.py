#!/usr/bin/env python3
"""Repository comment script: appends a markdown comment to a record.

Input: {"primary_index": str, "id": str, "email": str, "comment": str}

Creates data/<primary_index>/comments/<sanitized_email>/<comment_id>.md
where the email is lowercased and every char outside [a-z0-9._-] becomes
"_". Comments are append-only; nothing here updates or deletes them.

Output: {"success": true, "comment_id": str, "path": str, "created_at": str}
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from house_store import (  # noqa: E402
    COMMENTS_DIR_NAME,
    CODE_IO_ERROR,
    create_with_fresh_id,
    default_data_dir,
    emit_result,
    failure,
    is_contained,
    is_identifier,
    load_input,
    now_utc,
    relative_path,
    sanitize_email,
)

REQUIRED_FIELDS = ("primary_index", "id", "email", "comment")


def render_comment(record_id: str, email: str, created_at: str, body: str) -> str:
    return (
        f"# Comment on {record_id}\n"
        f"Author: {email}\n"
        f"Created: {created_at}\n"
        f"Record ID: {record_id}\n"
        "\n"
        "---\n"
        "\n"
        f"{body}\n"
    )


def comment(params: dict, data_dir: Path) -> dict:
    """File a comment from ``params["email"]`` on record ``params["id"]``."""
    if not data_dir.is_dir():
        return failure("Data directory not found", CODE_IO_ERROR)

    for field in REQUIRED_FIELDS:
        value = params.get(field)
        if not value or not isinstance(value, str):
            return failure(f"Missing required parameter: {field}")

    primary_index = params["primary_index"].strip()
    record_id = params["id"].strip()
    email = params["email"].strip().lower()
    body = params["comment"].strip()

    if not is_identifier(primary_index):
        return failure("Invalid primary_index: contains invalid characters")
    if not is_identifier(record_id):
        return failure("Invalid id: contains invalid characters")
    if not body:
        return failure("Missing required parameter: comment")

    author_token = sanitize_email(email)
    if not is_identifier(author_token):
        return failure("Invalid email: cannot be used as an author directory")

    index_dir = data_dir / primary_index
    comments_dir = index_dir / COMMENTS_DIR_NAME / author_token
    if not is_contained(index_dir, data_dir) or not is_contained(comments_dir, data_dir):
        return failure("Invalid path: directory traversal attempt")

    created_at = now_utc()
    try:
        comments_dir.mkdir(parents=True, exist_ok=True)
        comment_id, target, _ = create_with_fresh_id(
            comments_dir, None, ".md",
            lambda _cid: render_comment(record_id, email, created_at, body),
        )
    except OSError as e:
        return failure(str(e), CODE_IO_ERROR)

    return {
        "success": True,
        "comment_id": comment_id,
        "path": relative_path(target, data_dir),
        "created_at": created_at,
    }


def main():
    parser = argparse.ArgumentParser(description="Comment on a repository record.")
    parser.add_argument("--input", help="JSON object: {primary_index, id, email, comment}")
    args = parser.parse_args()

    params, err = load_input(args.input)
    if err:
        return emit_result(err)
    return emit_result(comment(params, default_data_dir()))


if __name__ == "__main__":
    sys.exit(main())
