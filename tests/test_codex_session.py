from datetime import datetime, timedelta, timezone

from codex_session import (
    ActiveSession,
    ExpiredSession,
    InvocationOutcome,
    NoSession,
    clear_session,
    load_session_state,
    mark_session_active,
    mark_session_expired,
    record_invocation,
    session_status,
)
from config import ProjectPaths

START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _paths(tmp_path):
    return ProjectPaths(root=tmp_path)


def test_missing_state_is_no_session(tmp_path):
    assert isinstance(session_status(_paths(tmp_path), "requirements"), NoSession)


def test_corrupt_state_is_no_session(tmp_path):
    state_file = tmp_path / ".task" / "codex-session.json"
    state_file.parent.mkdir(parents=True)
    state_file.write_text('{"sessions": {"design": {"state": "dancing"}}}', encoding="utf-8")
    assert load_session_state(_paths(tmp_path)).sessions == {}
    assert isinstance(session_status(_paths(tmp_path), "design"), NoSession)


def test_active_session_round_trips_per_type(tmp_path):
    paths = _paths(tmp_path)
    mark_session_active(paths, "design", now=START)
    status = session_status(paths, "design", now=START + timedelta(minutes=5))
    assert isinstance(status, ActiveSession)
    assert status.since == START
    assert isinstance(session_status(paths, "spec", now=START), NoSession)


def test_active_session_past_ttl_reads_as_expired(tmp_path):
    paths = _paths(tmp_path)
    mark_session_active(paths, "design", now=START)
    status = session_status(paths, "design", now=START + timedelta(hours=2), ttl_seconds=3600)
    assert isinstance(status, ExpiredSession)
    assert status.expired_at == START + timedelta(hours=1)


def test_mark_expired_keeps_start_time(tmp_path):
    paths = _paths(tmp_path)
    mark_session_active(paths, "requirements", now=START)
    expired = mark_session_expired(paths, "requirements", now=START + timedelta(minutes=10))
    assert expired.since == START
    assert isinstance(session_status(paths, "requirements"), ExpiredSession)


def test_clear_session_only_touches_one_type(tmp_path):
    paths = _paths(tmp_path)
    mark_session_active(paths, "design", now=START)
    mark_session_active(paths, "spec", now=START)
    clear_session(paths, "design")
    assert isinstance(session_status(paths, "design", now=START), NoSession)
    assert isinstance(session_status(paths, "spec", now=START), ActiveSession)


def test_failed_or_timed_out_invocation_never_activates(tmp_path):
    paths = _paths(tmp_path)
    assert isinstance(record_invocation(paths, "design", InvocationOutcome.timeout, now=START), NoSession)
    assert isinstance(record_invocation(paths, "design", InvocationOutcome.failed, now=START), NoSession)
    assert isinstance(record_invocation(paths, "design", InvocationOutcome.success, now=START), ActiveSession)
    assert isinstance(record_invocation(paths, "design", InvocationOutcome.session_expired, now=START), ExpiredSession)


def test_naive_timestamps_are_treated_as_utc(tmp_path):
    state_file = tmp_path / ".task" / "codex-session.json"
    state_file.parent.mkdir(parents=True)
    state_file.write_text(
        '{"sessions": {"design": {"state": "active", "since": "2024-05-01T12:00:00"}}}', encoding="utf-8"
    )
    status = session_status(_paths(tmp_path), "design", now=START + timedelta(minutes=1))
    assert isinstance(status, ActiveSession)
