#!/usr/bin/env python3
"""Input validators for remotehouse requests.

Allow-list predicates run by the orchestration layer before any script is
resolved or spawned. Every predicate returns a bool and never raises:
wrong-typed input (None, numbers, lists) is simply invalid.

The repository scripts repeat their own identifier and containment checks;
these predicates are the first gate, not the only one.

No external dependencies (stdlib only).
"""

import json
import re
from typing import Optional

# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

MAX_IDENTIFIER_LENGTH = 128
MAX_BROWSE_PATH_LENGTH = 512
MAX_EMAIL_LENGTH = 254
MAX_QUERY_LENGTH = 500
MAX_COMMENT_LENGTH = 64 * 1024
MAX_PAYLOAD_SIZE = 1024 * 1024
MIN_DEPTH, MAX_DEPTH, DEFAULT_DEPTH = 1, 10, 3
MAX_LIMIT = 1000

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
# Shell metacharacters rejected in free-text queries
_QUERY_FORBIDDEN_RE = re.compile(r"[;`$(){}\[\]|&<>\\\x00]")


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

def _valid_identifier(value) -> bool:
    if not isinstance(value, str):
        return False
    if not value or len(value) > MAX_IDENTIFIER_LENGTH:
        return False
    # ".", ".." and friends match the alphabet but name no real partition
    if not value.strip("."):
        return False
    return bool(_IDENTIFIER_RE.match(value))


def valid_repository_name(name) -> bool:
    return _valid_identifier(name)


def valid_primary_index(primary_index) -> bool:
    return _valid_identifier(primary_index)


def valid_record_id(record_id) -> bool:
    return _valid_identifier(record_id)


def valid_search_field(field) -> bool:
    return _valid_identifier(field)


def valid_browse_path(path) -> bool:
    """Relative ``a/b/c`` path whose every component is a valid identifier."""
    if not isinstance(path, str):
        return False
    if not path or len(path) > MAX_BROWSE_PATH_LENGTH:
        return False
    if path.startswith("/") or "\\" in path:
        return False
    return all(_valid_identifier(part) for part in path.rstrip("/").split("/"))


# ---------------------------------------------------------------------------
# Free text
# ---------------------------------------------------------------------------

def valid_email(email) -> bool:
    """RFC-5322-lite syntax check. Used as an identifier, not for delivery."""
    if not isinstance(email, str):
        return False
    if len(email) < 3 or len(email) > MAX_EMAIL_LENGTH:
        return False
    return bool(_EMAIL_RE.match(email))


def valid_search_query(query, max_length: int = MAX_QUERY_LENGTH) -> bool:
    if not isinstance(query, str):
        return False
    if not query.strip() or len(query) > max_length:
        return False
    return not _QUERY_FORBIDDEN_RE.search(query)


def valid_comment_content(content, max_length: int = MAX_COMMENT_LENGTH) -> bool:
    if not isinstance(content, str):
        return False
    if not content.strip() or len(content) > max_length:
        return False
    return "\x00" not in content


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------

def _is_int(value) -> bool:
    # bool is a subclass of int -- reject explicitly
    return isinstance(value, int) and not isinstance(value, bool)


def valid_depth(depth) -> bool:
    """None (use the default of 3) or an int in [1, 10]."""
    if depth is None:
        return True
    return _is_int(depth) and MIN_DEPTH <= depth <= MAX_DEPTH


def valid_pagination(limit=None, offset=None, max_limit: int = MAX_LIMIT) -> bool:
    if limit is not None:
        if not _is_int(limit) or limit < 1 or limit > max_limit:
            return False
    if offset is not None:
        if not _is_int(offset) or offset < 0:
            return False
    return True


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

def payload_size(payload) -> Optional[int]:
    """Compact UTF-8 JSON size in bytes, or None if not serializable."""
    try:
        return len(
            json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        )
    except (TypeError, ValueError):
        return None


def valid_required_fields(payload, required_fields) -> bool:
    """Every field present, not None and not a blank string."""
    if not isinstance(payload, dict):
        return False
    for field in required_fields or ():
        value = payload.get(field)
        if value is None:
            return False
        if isinstance(value, str) and not value.strip():
            return False
    return True


def valid_payload(payload, max_size: int = MAX_PAYLOAD_SIZE,
                  required_fields=("primary_index",)) -> bool:
    """Plain object within the size ceiling carrying every required field."""
    if not isinstance(payload, dict):
        return False
    size = payload_size(payload)
    if size is None or size > max_size:
        return False
    if not valid_required_fields(payload, required_fields):
        return False
    if "primary_index" in payload and not valid_primary_index(payload["primary_index"]):
        return False
    return True
