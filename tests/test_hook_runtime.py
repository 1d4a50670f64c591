import json

import pytest

import hook_runtime
from config import Settings
from hook_runtime import agent_type_from_transcript, parse_hook_input, run_hook, short_agent_name


def _settings(tmp_path):
    return Settings(project_dir=str(tmp_path))


def _transcript(tmp_path, agent_type):
    path = tmp_path / "agent-def456.jsonl"
    line = {"type": "tool_use", "input": {"subagent_type": agent_type, "prompt": "go"}}
    path.write_text(json.dumps(line) + "\n", encoding="utf-8")
    return path


def _stdin(transcript):
    return json.dumps({"agent_id": "def456", "agent_transcript_path": str(transcript)})


def _write(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_agent_type_from_transcript(tmp_path):
    transcript = _transcript(tmp_path, "claude-codex:strategist-codex")
    assert agent_type_from_transcript(str(transcript)) == "claude-codex:strategist-codex"
    assert agent_type_from_transcript(str(tmp_path / "missing.jsonl")) is None
    assert short_agent_name("claude-codex:strategist-codex") == "strategist-codex"


def test_parse_hook_input():
    assert parse_hook_input('{"agent_transcript_path": "/tmp/a.jsonl"}').agent_transcript_path == "/tmp/a.jsonl"
    assert parse_hook_input("not json") is None
    assert parse_hook_input("[]") is None


def test_block_printed_to_stdout_in_strict_mode(tmp_path, capsys):
    transcript = _transcript(tmp_path, "claude-codex:strategist-codex")
    assert run_hook("blind-audit-gates", _stdin(transcript), _settings(tmp_path)) == 0

    captured = capsys.readouterr()
    decision = json.loads(captured.out)
    assert decision == {"decision": "block", "reason": "GATE A FAILED: docs/security/threat-model.md is missing."}


def test_warn_mode_writes_warning_to_stderr(tmp_path, capsys):
    _write(tmp_path / ".claude-codex.json", json.dumps({"blind_audit_sc": {"gate_strictness": "medium"}}))
    transcript = _transcript(tmp_path, "claude-codex:strategist-codex")
    assert run_hook("blind-audit-gates", _stdin(transcript), _settings(tmp_path)) == 0

    captured = capsys.readouterr()
    assert captured.out == ""
    assert "WARNING: GATE A FAILED: docs/security/threat-model.md is missing." in captured.err


def test_other_agents_are_ignored(tmp_path, capsys):
    transcript = _transcript(tmp_path, "claude-codex:plan-reviewer")
    assert run_hook("blind-audit-gates", _stdin(transcript), _settings(tmp_path)) == 0
    assert capsys.readouterr().out == ""


def test_unusable_input_allows(tmp_path, capsys):
    assert run_hook("bundle", "garbage", _settings(tmp_path)) == 0
    assert run_hook("bundle", json.dumps({"agent_id": "x"}), _settings(tmp_path)) == 0
    assert run_hook("no-such-hook", "{}", _settings(tmp_path)) == 0
    assert capsys.readouterr().out == ""


def test_internal_error_fails_open(tmp_path, capsys, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("config exploded")

    monkeypatch.setattr(hook_runtime, "load_pipeline_config", explode)
    transcript = _transcript(tmp_path, "claude-codex:strategist-codex")
    assert run_hook("blind-audit-gates", _stdin(transcript), _settings(tmp_path)) == 0
    assert capsys.readouterr().out == ""


def test_review_hook_uses_configured_calibration_window(tmp_path, capsys):
    _write(tmp_path / ".task" / "detect-coverage.json", '{"status": "pending"}')
    transcript = _transcript(tmp_path, "claude-codex:exploit-hunter")
    assert run_hook("review", _stdin(transcript), _settings(tmp_path)) == 0
    assert json.loads(capsys.readouterr().out)["reason"].startswith("detect-coverage.json status is")


@pytest.mark.parametrize("name", sorted(hook_runtime.HOOKS))
def test_every_hook_passes_on_an_unknown_agent(tmp_path, capsys, name):
    transcript = _transcript(tmp_path, "claude-codex:requirements-gatherer")
    assert run_hook(name, _stdin(transcript), _settings(tmp_path)) == 0
    assert capsys.readouterr().out == ""
