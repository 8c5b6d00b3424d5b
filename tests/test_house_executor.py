"""Tests for house_executor.py -- bounded script execution.

Covers: JSON and raw output, nonzero exit, missing script, wall-clock
timeout with group kill, output ceiling, memory ceiling, working
directory, child environment, and concurrent calls.
"""

import json
import os
import subprocess
import textwrap
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from pydantic import ValidationError

from house_executor import (
    ExecutionConfig,
    execute_script,
    execute_script_with_input,
    validate_script,
)

try:
    import resource
except ImportError:
    resource = None


def _script(tmp_path, body, name="script.py"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


class TestOutcomes:
    def test_json_output_parsed(self, tmp_path):
        script = _script(tmp_path, """
            import json, sys
            print(json.dumps({"ok": True, "args": sys.argv[1:]}))
        """)
        result = execute_script(script, ["--depth", "3"])
        assert result.success is True
        assert result.output == {"ok": True, "args": ["--depth", "3"]}
        assert result.exit_code == 0
        assert result.error_kind is None
        assert result.duration_ms >= 0

    def test_raw_text_passthrough(self, tmp_path):
        script = _script(tmp_path, 'print("plain text")')
        result = execute_script(script)
        assert result.success is True
        assert result.output == "plain text\n"

    def test_nonzero_exit_surfaces_stderr(self, tmp_path):
        script = _script(tmp_path, """
            import sys
            sys.stderr.write("boom")
            sys.exit(3)
        """)
        result = execute_script(script)
        assert result.success is False
        assert result.error_kind == "NonZeroExit"
        assert result.exit_code == 3
        assert result.error == "boom"

    def test_nonzero_exit_without_stderr(self, tmp_path):
        script = _script(tmp_path, "raise SystemExit(2)")
        result = execute_script(script)
        assert result.error == "Process exited with code 2"

    def test_missing_script(self, tmp_path):
        result = execute_script(tmp_path / "absent.py")
        assert result.success is False
        assert result.error_kind == "ScriptNotFound"

    def test_spawn_error(self, tmp_path):
        script = _script(tmp_path, "print(1)")
        config = ExecutionConfig(interpreter=str(tmp_path / "no-such-interpreter"))
        result = execute_script(script, config=config)
        assert result.error_kind == "SpawnError"

    def test_with_input_passes_single_json_argument(self, tmp_path):
        script = _script(tmp_path, """
            import json, sys
            assert sys.argv[1] == "--input"
            print(json.dumps(json.loads(sys.argv[2])))
        """)
        data = {"payload": {"title": "Amélie; rm -rf /"}}
        result = execute_script_with_input(script, data)
        assert result.output == data


class TestLimits:
    def test_timeout_kills_promptly(self, tmp_path):
        script = _script(tmp_path, "import time\ntime.sleep(60)\n")
        start = time.monotonic()
        result = execute_script(script, config=ExecutionConfig(timeout_ms=200))
        elapsed = time.monotonic() - start
        assert result.success is False
        assert result.error_kind == "Timeout"
        assert elapsed < 0.5

    def test_timeout_kills_process_group(self, tmp_path):
        # Grandchild inherits the pipes; if it survived, the readers would
        # block until their join deadline.
        script = _script(tmp_path, """
            import subprocess, sys, time
            subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
            time.sleep(60)
        """)
        start = time.monotonic()
        result = execute_script(script, config=ExecutionConfig(timeout_ms=300))
        assert result.error_kind == "Timeout"
        assert time.monotonic() - start < 2.0

    def test_output_ceiling(self, tmp_path):
        script = _script(tmp_path, 'import sys\nsys.stdout.write("x" * 200000)\n')
        result = execute_script(script, config=ExecutionConfig(max_output_bytes=1024))
        assert result.success is True
        assert result.stdout_truncated is True
        assert result.output == "x" * 1024

    @pytest.mark.skipif(resource is None, reason="rlimits need POSIX")
    def test_memory_ceiling_from_worker_threads(self, tmp_path):
        script = _script(tmp_path, "blob = bytearray(512 * 1024 * 1024)\n")
        config = ExecutionConfig(max_memory_mib=128)
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: execute_script(script, config=config), range(4)))
        assert all(r.error_kind == "NonZeroExit" for r in results)
        assert all("MemoryError" in r.error for r in results)

    def test_no_preexec_fn(self, tmp_path, monkeypatch):
        seen = {}
        real_popen = subprocess.Popen

        def recording_popen(*args, **kwargs):
            seen.update(kwargs)
            return real_popen(*args, **kwargs)

        monkeypatch.setattr(subprocess, "Popen", recording_popen)
        result = execute_script(_script(tmp_path, "print(1)"))
        assert result.output == 1
        assert seen.get("preexec_fn") is None
        assert seen["start_new_session"] is True

    @pytest.mark.skipif(resource is None, reason="rlimits need POSIX")
    def test_memory_ceiling(self, tmp_path):
        script = _script(tmp_path, 'blob = bytearray(512 * 1024 * 1024)\nprint("allocated")\n')
        result = execute_script(script, config=ExecutionConfig(max_memory_mib=128))
        assert result.success is False
        assert result.error_kind == "NonZeroExit"
        assert "MemoryError" in result.error


class TestEnvironment:
    def test_working_dir_and_env(self, tmp_path):
        workdir = tmp_path / "repo"
        workdir.mkdir()
        script = _script(tmp_path, """
            import json, os
            print(json.dumps({"cwd": os.getcwd(), "flag": os.environ.get("SCRIPT_EXECUTION")}))
        """)
        result = execute_script(script, config=ExecutionConfig(working_dir=str(workdir)))
        assert os.path.realpath(result.output["cwd"]) == os.path.realpath(str(workdir))
        assert result.output["flag"] == "true"

    def test_unicode_output(self, tmp_path):
        script = _script(tmp_path, """
            import json
            print(json.dumps({"title": "Le Fabuleux Destin d'Amélie"}, ensure_ascii=False))
        """)
        assert execute_script(script).output["title"].endswith("Amélie")


class TestConcurrency:
    def test_parallel_calls_do_not_serialize(self, tmp_path):
        script = _script(tmp_path, """
            import json, sys, time
            time.sleep(0.5)
            print(json.dumps({"n": int(sys.argv[1])}))
        """)
        start = time.monotonic()
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda n: execute_script(script, [str(n)]), range(4)))
        elapsed = time.monotonic() - start
        assert sorted(r.output["n"] for r in results) == [0, 1, 2, 3]
        assert elapsed < 1.9


class TestConfig:
    def test_rejects_unknown_keys(self):
        with pytest.raises(ValidationError):
            ExecutionConfig(timeout=5)

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValidationError):
            ExecutionConfig(timeout_ms=0)

    def test_validate_script(self, tmp_path):
        script = _script(tmp_path, "print(1)")
        assert validate_script(script)
        assert not validate_script(tmp_path / "missing.py")
        assert not validate_script(tmp_path)


def test_result_serializes(tmp_path):
    script = _script(tmp_path, 'print("[1, 2]")')
    dumped = json.loads(execute_script(script).model_dump_json())
    assert dumped["output"] == [1, 2]
