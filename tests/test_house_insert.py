"""Tests for house_insert.py -- record creation."""

import json
import re
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from conftest import SCRIPTS_DIR, make_movie, run_script
from house_insert import InsertRules, insert, parse_rules

ID_RE = re.compile(r"^movies_\d{13}_[0-9a-f]{8}$")


class TestInsert:
    def test_creates_record_file(self, data_dir):
        result = insert({"payload": make_movie()}, data_dir)
        assert result["success"] is True
        assert ID_RE.match(result["id"])
        assert result["path"] == f"movies/{result['id']}.json"
        stored = json.loads((data_dir / result["path"]).read_text(encoding="utf-8"))
        assert stored["id"] == result["id"]
        assert stored["title"] == "Inception"
        assert stored["created_at"].endswith("Z")
        assert result["size"] > 0

    def test_generated_id_overrides_payload_id(self, data_dir):
        result = insert({"payload": make_movie(id="mine", created_at="yesterday")}, data_dir)
        stored = json.loads((data_dir / result["path"]).read_text(encoding="utf-8"))
        assert stored["id"] == result["id"] != "mine"
        assert stored["created_at"] != "yesterday"

    def test_sequential_inserts_get_distinct_ids(self, data_dir):
        ids = {insert({"payload": make_movie()}, data_dir)["id"] for _ in range(1000)}
        assert len(ids) == 1000
        assert len(list((data_dir / "movies").glob("*.json"))) == 1000

    def test_concurrent_inserts_get_distinct_ids(self, data_dir):
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: insert({"payload": make_movie()}, data_dir), range(200)))
        assert all(r["success"] for r in results)
        assert len({r["id"] for r in results}) == 200

    def test_no_temp_files_left_behind(self, data_dir):
        insert({"payload": make_movie()}, data_dir)
        assert [p.name for p in (data_dir / "movies").iterdir() if p.suffix != ".json"] == []


class TestInsertRejects:
    def test_missing_primary_index(self, data_dir):
        result = insert({"payload": {"title": "x"}}, data_dir)
        assert result == {
            "success": False,
            "error": "Missing required field: primary_index",
            "code": "invalid_input",
        }

    def test_payload_must_be_object(self, data_dir):
        result = insert({"payload": ["movies"]}, data_dir)
        assert result["success"] is False
        assert result["code"] == "invalid_input"

    def test_traversal_in_primary_index(self, data_dir):
        for bad in ("../escape", "..", "a/b", "movies;rm"):
            result = insert({"payload": make_movie(primary_index=bad)}, data_dir)
            assert result["success"] is False
            assert "primary_index" in result["error"]
        assert list(data_dir.iterdir()) == []
        assert not (data_dir.parent / "escape").exists()

    def test_oversized_payload_touches_nothing(self, data_dir):
        payload = make_movie(primary_index="movies2", blob="x" * 2048)
        result = insert({"payload": payload, "rules": {"max_payload_size": 1024}}, data_dir)
        assert result["success"] is False
        assert result["error"].startswith("Payload too large")
        assert not (data_dir / "movies2").exists()

    def test_custom_required_fields(self, data_dir):
        rules = {"required_fields": ["primary_index", "director"]}
        result = insert({"payload": make_movie(director="  "), "rules": rules}, data_dir)
        assert result["error"] == "Missing required field: director"

    def test_missing_data_dir(self, tmp_path):
        result = insert({"payload": make_movie()}, tmp_path / "nope")
        assert result["code"] == "io_error"


class TestRules:
    def test_defaults(self):
        rules, err = parse_rules(None)
        assert err is None
        assert rules == InsertRules()
        assert rules.required_fields == ["primary_index"]

    def test_bad_size_reported(self):
        rules, err = parse_rules({"max_payload_size": 0})
        assert rules is None
        assert err.startswith("Invalid rules: max_payload_size")

    def test_allowed_characters_ignored_with_warning(self, capsys):
        rules, err = parse_rules({"allowed_characters": "abc"})
        assert err is None
        assert "[WARN]" in capsys.readouterr().err


class TestInsertScript:
    def test_cli_writes_single_json_document(self, data_dir):
        script = Path(SCRIPTS_DIR) / "house_insert.py"
        code, output, _ = run_script(
            script, ["--input", json.dumps({"payload": make_movie()})], data_dir.parent,
        )
        assert code == 0
        assert output["success"] is True
        assert (data_dir / output["path"]).is_file()

    def test_cli_invalid_json_input(self, data_dir):
        script = Path(SCRIPTS_DIR) / "house_insert.py"
        code, output, _ = run_script(script, ["--input", "{not json"], data_dir.parent)
        assert code == 0
        assert output["success"] is False
        assert output["error"].startswith("Invalid JSON input")
