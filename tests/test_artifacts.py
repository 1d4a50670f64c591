import os

import pytest

from artifacts import (
    find_latest_run_dir,
    is_recent,
    load_artifact,
    load_first_artifact,
    read_nonempty_text,
    resolve_just_written_artifact,
    walk_files,
)
from schemas import DetectCoverage, StatusArtifact


def _write(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_read_nonempty_text(tmp_path):
    assert read_nonempty_text(tmp_path / "missing.md") is None
    assert read_nonempty_text(_write(tmp_path / "empty.md", "")) is None
    assert read_nonempty_text(_write(tmp_path / "full.md", "# Title")) == "# Title"
    assert read_nonempty_text(tmp_path) is None


def test_is_recent(tmp_path):
    path = _write(tmp_path / "a.json", "{}")
    os.utime(path, (1000, 1000))
    assert is_recent(path, 60, now=1030)
    assert not is_recent(path, 60, now=1100)
    assert not is_recent(tmp_path / "missing.json", 60, now=1030)


def test_load_artifact_missing_and_unparsable_read_as_missing(tmp_path):
    assert load_artifact(tmp_path / "absent.json", StatusArtifact).missing
    garbage = _write(tmp_path / "garbage.json", "I could not produce the artifact")
    assert load_artifact(garbage, StatusArtifact).missing


def test_load_artifact_validates_once(tmp_path):
    path = _write(tmp_path / "review.json", 'Sure!\n```json\n{"status": "Approved"}\n```')
    loaded = load_artifact(path, StatusArtifact)
    assert loaded.ok
    assert loaded.value.status == "approved"


def test_load_artifact_schema_error(tmp_path):
    path = _write(tmp_path / "detect-coverage.json", '{"high_med_candidates": "three"}')
    loaded = load_artifact(path, DetectCoverage)
    assert not loaded.ok
    assert not loaded.missing
    assert loaded.schema_reason().startswith("detect-coverage.json does not match the expected schema: ")
    assert "high_med_candidates" in loaded.error


def test_load_artifact_non_object(tmp_path):
    path = _write(tmp_path / "list.json", "[1, 2]")
    loaded = load_artifact(path, StatusArtifact)
    assert loaded.error == "expected a JSON object, got list"


def test_load_first_artifact_prefers_earlier_candidate(tmp_path):
    first = _write(tmp_path / "run" / "a.json", '{"status": "complete"}')
    _write(tmp_path / "a.json", '{"status": "pending"}')
    loaded = load_first_artifact([first, tmp_path / "a.json"], StatusArtifact)
    assert loaded.value.status == "complete"

    loaded = load_first_artifact([tmp_path / "nope.json", tmp_path / "a.json"], StatusArtifact)
    assert loaded.value.status == "pending"

    with pytest.raises(ValueError):
        load_first_artifact([], StatusArtifact)


def test_resolve_just_written_artifact_picks_newest(tmp_path):
    older = _write(tmp_path / "review-sonnet.json", "{}")
    newer = _write(tmp_path / "review-opus.json", "{}")
    os.utime(older, (1000, 1000))
    os.utime(newer, (2000, 2000))
    assert resolve_just_written_artifact([older, newer]) == newer
    assert resolve_just_written_artifact([older, newer], since=2500) is None
    assert resolve_just_written_artifact([tmp_path / "absent.json"]) is None


def test_resolve_just_written_artifact_tie_goes_to_first(tmp_path):
    first = _write(tmp_path / "review-sonnet.json", "{}")
    second = _write(tmp_path / "review-opus.json", "{}")
    os.utime(first, (1000, 1000))
    os.utime(second, (1000, 1000))
    assert resolve_just_written_artifact([first, second]) == first


def test_find_latest_run_dir(tmp_path):
    task_dir = tmp_path / ".task"
    for name in ("blind-audit-900", "blind-audit-1700000000", "blind-audit-20", "other-99999999999"):
        (task_dir / name).mkdir(parents=True)
    _write(task_dir / "blind-audit-99999999999", "a file, not a run")
    assert find_latest_run_dir(task_dir) == task_dir / "blind-audit-1700000000"
    assert find_latest_run_dir(tmp_path / "missing") is None


def test_walk_files_prunes_directories(tmp_path):
    _write(tmp_path / "invariants.md", "x")
    _write(tmp_path / "src" / "Vault.sol", "x")
    _write(tmp_path / "docs" / "notes.md", "x")
    names = sorted(path.relative_to(tmp_path).as_posix() for path in walk_files(tmp_path, skip_dirs=("src",)))
    assert names == ["docs/notes.md", "invariants.md"]
