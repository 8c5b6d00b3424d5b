#!/usr/bin/env python3
"""Request handling for remotehouse repositories.

Sits between a transport (HTTP routes, the CLI below) and the repository
scripts: validates the request, resolves ``<repos_root>/<repo>/scripts/<op>.py``,
runs it through the executor and turns the outcome into a
``ServiceResponse(status, body)``.

Status mapping:
  400  request rejected before any script ran, or script reported bad input
  404  repository missing, or script reported a missing record / path
  500  executor failure (body carries error_kind) or unusable script output
  201  insert / comment succeeded
  200  any other success

Usage:
  python3 house_service.py init movies
  python3 house_service.py run movies search --body '{"query": "inception"}'
  python3 house_service.py list
  python3 house_service.py stats movies
  python3 house_service.py cleanup
"""

import argparse
import json
import os
import shutil
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any, Literal, Optional, Union

sys.path.insert(0, str(Path(__file__).resolve().parent))

from pydantic import (  # noqa: E402
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
)

from house_cleanup import CleanupScheduler  # noqa: E402
from house_executor import ExecutionConfig, execute_script, execute_script_with_input  # noqa: E402
from house_logger import EventLog, LoggingSettings  # noqa: E402
from house_store import (  # noqa: E402
    CODE_INVALID_INPUT,
    CODE_NOT_FOUND,
    DATA_DIR_NAME,
    DEFAULT_MAX_PAYLOAD_SIZE,
)
from house_validators import (  # noqa: E402
    DEFAULT_DEPTH,
    valid_browse_path,
    valid_comment_content,
    valid_depth,
    valid_email,
    valid_pagination,
    valid_payload,
    valid_primary_index,
    valid_record_id,
    valid_repository_name,
    valid_required_fields,
    valid_search_field,
    valid_search_query,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SCRIPTS_DIR = Path(__file__).resolve().parent
REPOS_ROOT_ENV = "REPOSITORIES_ROOT_DIR"
DEFAULT_REPOS_ROOT = "./repos"
CONFIG_BASENAME = "remotehouse-config.json"
REPO_SCRIPTS_DIR_NAME = "scripts"

OPERATIONS = ("browse", "search", "insert", "remove", "comment")
_CREATING_OPERATIONS = ("insert", "comment")
_INPUT_OPERATIONS = ("insert", "remove", "comment")
# Helper modules a repository's scripts import at runtime
_SHARED_MODULES = ("house_store.py",)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ExecutorSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")
    timeout_ms: int = Field(30_000, gt=0)
    max_memory_mib: int = Field(256, gt=0)
    max_output_bytes: int = Field(10 * 1024 * 1024, gt=0)


class LimitSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")
    max_payload_size: int = Field(DEFAULT_MAX_PAYLOAD_SIZE, gt=0)


class CleanupSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")
    enabled: bool = False
    interval_s: float = Field(300.0, gt=0)
    initial_delay_s: float = Field(30.0, ge=0)


class HouseConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    limits: LimitSettings = Field(default_factory=LimitSettings)
    cleanup: CleanupSettings = Field(default_factory=CleanupSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def event_log(self, repos_root) -> EventLog:
        return EventLog(repos_root, self.logging)


def repos_root_from_env() -> Path:
    return Path(os.environ.get(REPOS_ROOT_ENV) or DEFAULT_REPOS_ROOT).resolve()


def load_config(repos_root) -> HouseConfig:
    """Read ``<repos_root>/remotehouse-config.json``; defaults if absent or bad."""
    config_path = Path(repos_root) / CONFIG_BASENAME
    if not config_path.is_file():
        return HouseConfig()
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return HouseConfig.model_validate(json.load(f))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        print(f"[WARN] ignoring unusable {CONFIG_BASENAME}: {e}", file=sys.stderr)
        return HouseConfig()


# ---------------------------------------------------------------------------
# Request models (closed set of operations, discriminated on ``op``)
# ---------------------------------------------------------------------------

class _Request(BaseModel):
    model_config = ConfigDict(extra="ignore")


class BrowseRequest(_Request):
    op: Literal["browse"]
    path: Optional[StrictStr] = None
    depth: Optional[StrictInt] = None
    limit: Optional[StrictInt] = None
    offset: Optional[StrictInt] = None


class SearchRequest(_Request):
    op: Literal["search"]
    query: StrictStr
    field: Optional[StrictStr] = None
    path: Optional[StrictStr] = None
    limit: Optional[StrictInt] = None
    offset: Optional[StrictInt] = None


class InsertRules(_Request):
    required_fields: Optional[list[StrictStr]] = None
    max_payload_size: Optional[StrictInt] = Field(None, gt=0)


class InsertRequest(_Request):
    op: Literal["insert"]
    payload: dict[str, Any]
    rules: Optional[InsertRules] = None


class RemoveRequest(_Request):
    op: Literal["remove"]
    primary_index: StrictStr
    id: Optional[StrictStr] = None


class CommentRequest(_Request):
    op: Literal["comment"]
    primary_index: Optional[StrictStr] = None
    id: Optional[StrictStr] = None
    email: Optional[StrictStr] = None
    comment: Optional[StrictStr] = None


OperationRequest = Annotated[
    Union[BrowseRequest, SearchRequest, InsertRequest, RemoveRequest, CommentRequest],
    Field(discriminator="op"),
]
_REQUEST_ADAPTER = TypeAdapter(OperationRequest)


class ServiceResponse(BaseModel):
    status: int
    body: dict


def format_validation_error(e: ValidationError) -> str:
    """Render a pydantic error as a VALIDATION_ERROR block."""
    lines = ["VALIDATION_ERROR"]
    for err in e.errors():
        loc = ".".join(str(part) for part in err["loc"])
        lines.append(f"field: {loc}")
        lines.append(f"expected: {err['msg']}")
        if "input" in err:
            lines.append(f"got: {json.dumps(err['input'], default=str)[:200]}")
        lines.append("")
    return "\n".join(lines).rstrip("\n")


# ---------------------------------------------------------------------------
# Validation (before any script runs)
# ---------------------------------------------------------------------------

def _check_browse(req: BrowseRequest, config: HouseConfig) -> Optional[str]:
    if req.path and not valid_browse_path(req.path):
        return "Invalid path"
    if not valid_depth(req.depth):
        return "Invalid depth parameter"
    if not valid_pagination(req.limit, req.offset):
        return "Invalid pagination parameters"
    return None


def _check_search(req: SearchRequest, config: HouseConfig) -> Optional[str]:
    if not valid_search_query(req.query):
        return "Invalid search query"
    if req.field is not None and not valid_search_field(req.field):
        return "Invalid search field"
    if req.path and not valid_browse_path(req.path):
        return "Invalid path"
    if not valid_pagination(req.limit, req.offset):
        return "Invalid pagination parameters"
    return None


def _check_insert(req: InsertRequest, config: HouseConfig) -> Optional[str]:
    if not valid_payload(req.payload, max_size=config.limits.max_payload_size):
        return "Invalid payload"
    if req.rules and req.rules.required_fields:
        if not valid_required_fields(req.payload, req.rules.required_fields):
            return "Missing required fields in payload"
    return None


def _check_remove(req: RemoveRequest, config: HouseConfig) -> Optional[str]:
    if not valid_primary_index(req.primary_index):
        return "Invalid primary_index"
    if req.id is not None and not valid_record_id(req.id):
        return "Invalid record id"
    return None


def _check_comment(req: CommentRequest, config: HouseConfig) -> Optional[str]:
    for field in ("primary_index", "id", "email", "comment"):
        if not getattr(req, field):
            return f"Missing required parameter: {field}"
    if not valid_primary_index(req.primary_index):
        return "Invalid primary_index"
    if not valid_record_id(req.id):
        return "Invalid record id"
    if not valid_email(req.email):
        return "Invalid email"
    if not valid_comment_content(req.comment):
        return "Invalid comment content"
    return None


_CHECKS = {
    "browse": _check_browse,
    "search": _check_search,
    "insert": _check_insert,
    "remove": _check_remove,
    "comment": _check_comment,
}


# ---------------------------------------------------------------------------
# Script invocation
# ---------------------------------------------------------------------------

def _flag(name: str, value) -> str:
    # --name=value so a value starting with "-" is never read as a flag
    return f"--{name}={value}"


def build_script_args(req) -> list[str]:
    """Command-line flags for the argument-based scripts."""
    args = []
    if isinstance(req, SearchRequest):
        args.append(_flag("query", req.query))
        args.append(_flag("field", req.field or "title"))
    if isinstance(req, BrowseRequest):
        args.append(_flag("depth", req.depth or DEFAULT_DEPTH))
    if req.path:
        args.append(_flag("path", req.path))
    if req.limit is not None:
        args.append(_flag("limit", req.limit))
    if req.offset is not None:
        args.append(_flag("offset", req.offset))
    return args


def build_script_input(req, config: HouseConfig) -> dict:
    """The ``--input`` object for the input-blob scripts."""
    if isinstance(req, InsertRequest):
        ceiling = config.limits.max_payload_size
        rules = {"max_payload_size": ceiling}
        if req.rules:
            if req.rules.required_fields:
                rules["required_fields"] = list(req.rules.required_fields)
            if req.rules.max_payload_size:
                rules["max_payload_size"] = min(req.rules.max_payload_size, ceiling)
        return {"payload": req.payload, "rules": rules}
    if isinstance(req, RemoveRequest):
        data = {"primary_index": req.primary_index}
        if req.id is not None:
            data["id"] = req.id
        return data
    return {
        "primary_index": req.primary_index,
        "id": req.id,
        "email": req.email,
        "comment": req.comment,
    }


def resolve_script(repos_root, repo_name: str, op: str) -> Path:
    return Path(repos_root) / repo_name / REPO_SCRIPTS_DIR_NAME / f"{op}.py"


def _status_for_data_error(output: dict) -> int:
    code = output.get("code")
    if code == CODE_INVALID_INPUT:
        return 400
    if code == CODE_NOT_FOUND:
        return 404
    return 500


def _fail(status: int, error: str, **extra) -> ServiceResponse:
    body = {"success": False, "error": error}
    body.update(extra)
    return ServiceResponse(status=status, body=body)


def handle_request(repo_name, op, body, *, repos_root=None,
                   config: Optional[HouseConfig] = None) -> ServiceResponse:
    """Validate, run and translate one repository operation."""
    start = time.monotonic()
    repos_root = Path(repos_root) if repos_root is not None else repos_root_from_env()
    config = config or load_config(repos_root)
    log = config.event_log(repos_root)
    log_kwargs = {"op": str(op), "repo": str(repo_name)}

    def reject(error: str) -> ServiceResponse:
        log.emit("service.reject", {"error": error}, **log_kwargs)
        return _fail(400, error)

    if not valid_repository_name(repo_name):
        return reject("Invalid repository name")
    if op not in OPERATIONS:
        return reject(f"Unknown operation: {op}")
    if not isinstance(body, dict):
        return reject("Invalid JSON request body")

    try:
        req = _REQUEST_ADAPTER.validate_python({**body, "op": op})
    except ValidationError as e:
        return reject(format_validation_error(e))

    error = _CHECKS[op](req, config)
    if error:
        return reject(error)

    repo_dir = Path(repos_root) / repo_name
    if not repo_dir.is_dir():
        log.emit("service.request", {"status": 404}, **log_kwargs)
        return _fail(404, "Repository not found")

    exec_config = ExecutionConfig(
        timeout_ms=config.executor.timeout_ms,
        max_memory_mib=config.executor.max_memory_mib,
        max_output_bytes=config.executor.max_output_bytes,
        working_dir=str(repo_dir),
    )
    script = resolve_script(repos_root, repo_name, op)
    if op in _INPUT_OPERATIONS:
        result = execute_script_with_input(script, build_script_input(req, config), exec_config)
    else:
        result = execute_script(script, build_script_args(req), exec_config)

    if not result.success:
        log.emit("executor.result", {
            "error_kind": result.error_kind, "exit_code": result.exit_code,
        }, level="warning", duration_ms=result.duration_ms,
            error={"type": result.error_kind, "message": (result.error or "")[:500]},
            **log_kwargs)
        if result.error_kind == "ScriptNotFound":
            # Paths in responses stay relative to the repository
            message = f"Script not found: {REPO_SCRIPTS_DIR_NAME}/{op}.py"
        else:
            message = result.error or f"{op.capitalize()} failed"
        return _fail(500, message, error_kind=result.error_kind)

    output = result.output
    if not isinstance(output, dict):
        return _fail(500, f"Failed to parse {op} results")
    if output.get("success") is False:
        status = _status_for_data_error(output)
        log.emit("service.request", {"status": status},
                 duration_ms=result.duration_ms, **log_kwargs)
        return ServiceResponse(status=status, body=output)
    if op == "insert" and not output.get("id"):
        return _fail(500, "Insert script did not return record ID")

    status = 201 if op in _CREATING_OPERATIONS else 200
    response = dict(output)
    response["success"] = True
    response["_meta"] = {
        "duration": int((time.monotonic() - start) * 1000),
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
        "repoName": repo_name,
    }
    log.emit("service.request", {"status": status, "count": output.get("count")},
             duration_ms=result.duration_ms, **log_kwargs)
    return ServiceResponse(status=status, body=response)


# ---------------------------------------------------------------------------
# Repository management
# ---------------------------------------------------------------------------

def init_repository(repos_root, repo_name: str, overwrite: bool = False) -> Path:
    """Create ``<repos_root>/<repo_name>`` with the standard scripts and data dir."""
    if not valid_repository_name(repo_name):
        raise ValueError(f"Invalid repository name: {repo_name!r}")
    repo_dir = Path(repos_root) / repo_name
    scripts_dir = repo_dir / REPO_SCRIPTS_DIR_NAME
    scripts_dir.mkdir(parents=True, exist_ok=True)
    (repo_dir / DATA_DIR_NAME).mkdir(exist_ok=True)

    copies = [(SCRIPTS_DIR / f"house_{op}.py", scripts_dir / f"{op}.py") for op in OPERATIONS]
    copies += [(SCRIPTS_DIR / name, scripts_dir / name) for name in _SHARED_MODULES]
    for source, target in copies:
        if target.exists() and not overwrite:
            continue
        shutil.copyfile(source, target)
    return repo_dir


def list_repositories(repos_root) -> list[str]:
    root = Path(repos_root)
    if not root.is_dir():
        return []
    return sorted(
        entry.name for entry in root.iterdir()
        if entry.is_dir() and not entry.is_symlink()
        and valid_repository_name(entry.name)
        and (entry / REPO_SCRIPTS_DIR_NAME).is_dir()
    )


def repository_stats(repos_root, repo_name: str) -> dict:
    """File count and total byte size of a repository's data directory."""
    if not valid_repository_name(repo_name):
        raise ValueError(f"Invalid repository name: {repo_name!r}")
    data_dir = Path(repos_root) / repo_name / DATA_DIR_NAME
    files = 0
    size = 0
    if data_dir.is_dir():
        for dirpath, _dirnames, filenames in os.walk(data_dir):
            for name in filenames:
                try:
                    size += os.lstat(os.path.join(dirpath, name)).st_size
                except FileNotFoundError:
                    continue
                files += 1
    return {"repo": repo_name, "files": files, "size_bytes": size}


def start_cleanup(repos_root, config: Optional[HouseConfig] = None):
    """Start the expired-record purge if enabled in config. Returns a handle or None."""
    config = config or load_config(repos_root)
    if not config.cleanup.enabled:
        return None
    scheduler = CleanupScheduler(
        repos_root,
        interval_s=config.cleanup.interval_s,
        initial_delay_s=config.cleanup.initial_delay_s,
        log=config.event_log(repos_root),
    )
    return scheduler.start()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="remotehouse repository tool.")
    parser.add_argument("--root", help=f"Repositories root (default: ${REPOS_ROOT_ENV} or ./repos)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_init = sub.add_parser("init", help="Scaffold a repository")
    p_init.add_argument("repo")
    p_init.add_argument("--overwrite", action="store_true")

    sub.add_parser("list", help="List repositories")

    p_stats = sub.add_parser("stats", help="Data directory size and file count")
    p_stats.add_argument("repo")

    p_run = sub.add_parser("run", help="Run one operation")
    p_run.add_argument("repo")
    p_run.add_argument("op", choices=OPERATIONS)
    p_run.add_argument("--body", default="{}", help="JSON request body")

    sub.add_parser("cleanup", help="Purge expired records once")

    args = parser.parse_args()
    repos_root = Path(args.root).resolve() if args.root else repos_root_from_env()

    if args.command == "init":
        try:
            repo_dir = init_repository(repos_root, args.repo, overwrite=args.overwrite)
        except ValueError as e:
            print(f"ERROR: {e}")
            return 1
        print(json.dumps({"status": "created", "path": str(repo_dir)}))
        return 0

    if args.command == "list":
        print(json.dumps({"repositories": list_repositories(repos_root)}))
        return 0

    if args.command == "stats":
        try:
            print(json.dumps(repository_stats(repos_root, args.repo)))
        except ValueError as e:
            print(f"ERROR: {e}")
            return 1
        return 0

    if args.command == "cleanup":
        config = load_config(repos_root)
        scheduler = CleanupScheduler(repos_root, log=config.event_log(repos_root))
        print(json.dumps({"removed": scheduler.run_once()}))
        return 0

    try:
        body = json.loads(args.body)
    except json.JSONDecodeError as e:
        print(f"ERROR: --body is not valid JSON: {e}")
        return 1
    response = handle_request(args.repo, args.op, body, repos_root=repos_root)
    print(json.dumps({"status": response.status, "body": response.body}, ensure_ascii=False))
    return 0 if response.status < 400 else 1


if __name__ == "__main__":
    sys.exit(main())
