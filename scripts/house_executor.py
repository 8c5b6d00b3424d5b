#!/usr/bin/env python3
"""Script executor for remotehouse repository scripts.

Runs one repository script in its own OS process and classifies the
outcome. Guarantees:

  - the memory ceiling (RLIMIT_AS) and a CPU ceiling (RLIMIT_CPU) are set
    in the child by a short launcher that then execs the script, so no
    Python code runs between fork and exec (safe to call from many threads)
  - the child gets its own session; on timeout the whole process group
    receives SIGTERM, then SIGKILL after a short grace period
  - stdout/stderr capture stops growing at max_output_bytes (the rest is
    drained and discarded so the child never blocks on a full pipe)
  - execution is single-shot: nothing here retries

Failure classification (``ExecutionResult.error_kind``):

  ScriptNotFound  script file missing
  SpawnError      the process could not be started
  Timeout         killed after timeout_ms
  NonZeroExit     exited nonzero (stderr surfaced as the error)

A zero exit with non-JSON stdout is not an error; the raw text is passed
through as ``output``.
"""

import json
import math
import os
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

try:
    import resource
except ImportError:  # non-POSIX: no rlimits available
    resource = None

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

ErrorKind = Literal["ScriptNotFound", "SpawnError", "Timeout", "NonZeroExit"]

_READ_CHUNK = 64 * 1024
# Reader threads get this long to finish after the child is gone
_READER_JOIN_S = 2.0


class ExecutionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    timeout_ms: int = Field(30_000, gt=0)
    max_memory_mib: int = Field(256, gt=0)
    max_output_bytes: int = Field(10 * 1024 * 1024, gt=0)
    working_dir: Optional[str] = None
    kill_grace_ms: int = Field(100, ge=0)
    interpreter: str = sys.executable


class ExecutionResult(BaseModel):
    success: bool
    output: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    duration_ms: float
    exit_code: Optional[int] = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False


# ---------------------------------------------------------------------------
# Child process setup
# ---------------------------------------------------------------------------

_LAUNCHER = """\
import os, resource, sys

def cap(kind, value):
    soft, hard = resource.getrlimit(kind)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(kind, (value, hard if hard != resource.RLIM_INFINITY else value))

cap(resource.RLIMIT_AS, int(sys.argv[1]))
cap(resource.RLIMIT_CPU, int(sys.argv[2]))
os.execv(sys.executable, [sys.executable] + sys.argv[3:])
"""


def build_command(script: Path, args: Sequence[str], config: ExecutionConfig) -> list[str]:
    """Command line that runs *script* under the configured rlimits."""
    command = [str(script), *[str(a) for a in args]]
    if resource is None:
        return [config.interpreter, *command]
    mem_bytes = config.max_memory_mib * 1024 * 1024
    # CPU ceiling backs up the wall-clock timer for busy loops
    cpu_seconds = max(1, math.ceil(config.timeout_ms / 1000.0)) + 1
    return [config.interpreter, "-c", _LAUNCHER, str(mem_bytes), str(cpu_seconds), *command]


def _child_env() -> dict:
    env = dict(os.environ)
    env["SCRIPT_EXECUTION"] = "true"
    env["PYTHONIOENCODING"] = "utf-8"
    env["PYTHONDONTWRITEBYTECODE"] = "1"
    return env


class _BoundedReader(threading.Thread):
    """Drain a pipe, keeping at most *limit* bytes."""

    def __init__(self, stream, limit: int):
        super().__init__(daemon=True)
        self.stream = stream
        self.limit = limit
        self.chunks: list[bytes] = []
        self.size = 0
        self.truncated = False

    def run(self):
        try:
            while True:
                chunk = self.stream.read1(_READ_CHUNK)
                if not chunk:
                    break
                room = self.limit - self.size
                if room <= 0:
                    self.truncated = True
                    continue
                if len(chunk) > room:
                    chunk = chunk[:room]
                    self.truncated = True
                self.chunks.append(chunk)
                self.size += len(chunk)
        except (OSError, ValueError):
            pass  # pipe closed under us after a kill
        finally:
            try:
                self.stream.close()
            except OSError:
                pass

    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8", errors="replace")


def _kill_group(proc: subprocess.Popen, grace_s: float) -> None:
    """SIGTERM the child's process group, SIGKILL whatever survives *grace_s*."""
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.killpg(proc.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass
        try:
            proc.wait(timeout=grace_s)
            return
        except subprocess.TimeoutExpired:
            continue
    proc.wait()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_script(script_path) -> bool:
    """True if *script_path* is an existing, readable regular file."""
    path = Path(script_path)
    return path.is_file() and os.access(str(path), os.R_OK)


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 3)


def execute_script(script_path, args: Sequence[str] = (),
                   config: Optional[ExecutionConfig] = None) -> ExecutionResult:
    """Run *script_path* with *args* under *config* and classify the result."""
    config = config or ExecutionConfig()
    start = time.monotonic()
    script = Path(script_path)

    if not script.is_file():
        return ExecutionResult(
            success=False,
            error=f"Script not found: {script_path}",
            error_kind="ScriptNotFound",
            duration_ms=_elapsed_ms(start),
        )

    working_dir = config.working_dir or str(script.parent)
    cmd = build_command(script, args, config)

    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=working_dir,
            env=_child_env(),
            start_new_session=True,
        )
    except (OSError, subprocess.SubprocessError, ValueError) as e:
        return ExecutionResult(
            success=False,
            error=f"Failed to execute script: {e}",
            error_kind="SpawnError",
            duration_ms=_elapsed_ms(start),
        )

    out_reader = _BoundedReader(proc.stdout, config.max_output_bytes)
    err_reader = _BoundedReader(proc.stderr, config.max_output_bytes)
    out_reader.start()
    err_reader.start()

    timed_out = False
    try:
        proc.wait(timeout=config.timeout_ms / 1000.0)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_group(proc, config.kill_grace_ms / 1000.0)

    out_reader.join(_READER_JOIN_S)
    err_reader.join(_READER_JOIN_S)
    duration = _elapsed_ms(start)
    stdout, stderr = out_reader.text(), err_reader.text()
    common = {
        "duration_ms": duration,
        "exit_code": proc.returncode,
        "stdout_truncated": out_reader.truncated,
        "stderr_truncated": err_reader.truncated,
    }

    if timed_out:
        return ExecutionResult(
            success=False,
            error=f"Script timed out after {config.timeout_ms} ms",
            error_kind="Timeout",
            **common,
        )

    if proc.returncode != 0:
        return ExecutionResult(
            success=False,
            error=stderr.strip() or f"Process exited with code {proc.returncode}",
            error_kind="NonZeroExit",
            **common,
        )

    try:
        output = json.loads(stdout)
    except json.JSONDecodeError:
        output = stdout
    return ExecutionResult(success=True, output=output, **common)


def execute_script_with_input(script_path, input_data: Any,
                              config: Optional[ExecutionConfig] = None) -> ExecutionResult:
    """Run *script_path* with its whole input serialized into ``--input``."""
    return execute_script(
        script_path,
        ["--input", json.dumps(input_data, ensure_ascii=False)],
        config,
    )
