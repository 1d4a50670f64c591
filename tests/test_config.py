import json

import pytest
from pydantic import ValidationError

from config import ProjectPaths, Settings, load_pipeline_config


def _paths(tmp_path):
    return ProjectPaths(root=tmp_path)


def _write_config(tmp_path, payload):
    (tmp_path / ".claude-codex.json").write_text(json.dumps(payload), encoding="utf-8")


def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("CLAUDE_PROJECT_DIR", str(tmp_path))
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("CALIBRATION_WINDOW_SECONDS", "30")
    settings = Settings()
    assert settings.resolve_project_dir() == tmp_path
    assert settings.log_level == "DEBUG"
    assert settings.calibration_window_seconds == 30


def test_blank_project_dir_falls_back_to_cwd(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CLAUDE_PROJECT_DIR", "   ")
    assert Settings().resolve_project_dir() == tmp_path


def test_invalid_log_level_rejected(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "chatty")
    with pytest.raises(ValidationError):
        Settings()


def test_non_positive_window_rejected(monkeypatch):
    monkeypatch.setenv("CALIBRATION_WINDOW_SECONDS", "0")
    with pytest.raises(ValidationError):
        Settings()


def test_project_paths_layout(tmp_path):
    paths = _paths(tmp_path)
    assert paths.task("codex-spec.json") == tmp_path / ".task" / "codex-spec.json"
    assert paths.docs("reviews", "x.md") == tmp_path / "docs" / "reviews" / "x.md"
    assert paths.reports("forge-test.log") == tmp_path / "reports" / "forge-test.log"
    assert paths.config_path == tmp_path / ".claude-codex.json"


def test_missing_config_uses_defaults(tmp_path):
    pipeline = load_pipeline_config(_paths(tmp_path))
    assert pipeline.smart_contract_secure.is_strict
    assert pipeline.blind_audit_sc.is_blind_strict
    assert pipeline.blind_audit_sc.adversarial.min_attack_hypotheses == 5


def test_config_sections_are_read(tmp_path):
    _write_config(
        tmp_path,
        {
            "smart_contract_secure": {"gate_strictness": "medium", "enable_slither": False},
            "blind_audit_sc": {
                "blind_enforcement": "warn",
                "require_regression_tests": False,
                "adversarial": {"min_dos_hypotheses": 4},
            },
        },
    )
    pipeline = load_pipeline_config(_paths(tmp_path))
    assert not pipeline.smart_contract_secure.is_strict
    assert not pipeline.smart_contract_secure.enable_slither
    assert pipeline.blind_audit_sc.is_strict
    assert not pipeline.blind_audit_sc.is_blind_strict
    assert not pipeline.blind_audit_sc.require_regression_tests
    assert pipeline.blind_audit_sc.adversarial.min_dos_hypotheses == 4
    assert pipeline.blind_audit_sc.adversarial.min_economic_hypotheses == 2


def test_invalid_section_falls_back_without_touching_others(tmp_path):
    _write_config(
        tmp_path,
        {
            "smart_contract_secure": {"fuzz_runs": "lots"},
            "blind_audit_sc": {"gate_strictness": "low", "adversarial": {"adversarial_mode": "maybe"}},
        },
    )
    pipeline = load_pipeline_config(_paths(tmp_path))
    assert pipeline.smart_contract_secure.fuzz_runs == 5000
    assert not pipeline.blind_audit_sc.is_strict
    assert pipeline.blind_audit_sc.adversarial.adversarial_mode


def test_unparsable_config_uses_defaults(tmp_path):
    (tmp_path / ".claude-codex.json").write_text("not json at all", encoding="utf-8")
    assert load_pipeline_config(_paths(tmp_path)).blind_audit_sc.gate_strictness == "high"
