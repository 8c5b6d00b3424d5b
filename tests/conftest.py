"""Shared fixtures for remotehouse tests."""

import json
import subprocess
import sys
from pathlib import Path

import pytest

# Add scripts directory to path so we can import modules directly
SCRIPTS_DIR = str(Path(__file__).parent.parent / "scripts")
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)


# ---------------------------------------------------------------------------
# Sample record factories
# ---------------------------------------------------------------------------

def make_movie(title="Inception", **overrides):
    """Build a valid insert payload for the movies index."""
    data = {
        "primary_index": "movies",
        "title": title,
        "description": f"{title} (film)",
        "year": 2010,
        "tags": ["sci-fi"],
    }
    data.update(overrides)
    return data


def write_record(data_dir, primary_index, record_id, data):
    """Drop a record file straight into *data_dir* (bypasses insert)."""
    index_dir = Path(data_dir) / primary_index
    index_dir.mkdir(parents=True, exist_ok=True)
    path = index_dir / f"{record_id}.json"
    record = {"id": record_id}
    record.update(data)
    path.write_text(json.dumps(record, indent=2), encoding="utf-8")
    return path


def run_script(script, args, cwd):
    """Run a script as a subprocess and return (returncode, parsed stdout, stderr)."""
    result = subprocess.run(
        [sys.executable, str(script), *args],
        capture_output=True,
        text=True,
        cwd=str(cwd),
        timeout=30,
    )
    try:
        output = json.loads(result.stdout)
    except json.JSONDecodeError:
        output = result.stdout
    return result.returncode, output, result.stderr


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def data_dir(tmp_path):
    """An empty repository data directory."""
    d = tmp_path / "repo" / "data"
    d.mkdir(parents=True)
    return d


@pytest.fixture
def repos_root(tmp_path):
    root = tmp_path / "repos"
    root.mkdir()
    return root


@pytest.fixture
def repo(repos_root):
    """A scaffolded repository named ``movies-db`` under *repos_root*."""
    from house_service import init_repository
    return init_repository(repos_root, "movies-db")
