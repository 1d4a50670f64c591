"""
Explicit Codex session state, one record per review type, persisted in
``.task/codex-session.json``.

A record is ``no_session``, ``active`` (resumable, with ``since``) or
``expired``. An ``active`` record older than the TTL reads as ``expired``
so a crashed invocation cannot leave a session that looks resumable
forever. Unreadable state reads as ``no_session`` everywhere.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from config import ProjectPaths
from logger import get_logger
from normalize import read_and_normalize_json

logger = get_logger(__name__)

SESSION_FILE = "codex-session.json"
DEFAULT_TTL_SECONDS = 3600


class NoSession(BaseModel):
    state: Literal["no_session"] = "no_session"


class ActiveSession(BaseModel):
    state: Literal["active"] = "active"
    since: datetime


class ExpiredSession(BaseModel):
    state: Literal["expired"] = "expired"
    since: Optional[datetime] = None
    expired_at: datetime


SessionState = Annotated[Union[NoSession, ActiveSession, ExpiredSession], Field(discriminator="state")]


class SessionStore(BaseModel):
    sessions: dict[str, SessionState] = Field(default_factory=dict)


class InvocationOutcome(str, Enum):
    success = "success"
    timeout = "timeout"
    session_expired = "session_expired"
    failed = "failed"


def _now(now: Optional[datetime]) -> datetime:
    return _as_utc(now) if now is not None else datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # hand-edited state files may carry naive timestamps
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def load_session_state(paths: ProjectPaths) -> SessionStore:
    path = paths.task(SESSION_FILE)
    raw = read_and_normalize_json(path)
    if raw is None:
        return SessionStore()
    try:
        return SessionStore.model_validate(raw)
    except ValidationError as exc:
        logger.warning(
            "Ignoring corrupt codex session state",
            extra={"context": {"path": str(path), "errors": exc.error_count()}},
        )
        return SessionStore()


def save_session_state(paths: ProjectPaths, store: SessionStore) -> None:
    path = paths.task(SESSION_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(store.model_dump_json(indent=2), encoding="utf-8")


def session_status(
    paths: ProjectPaths,
    review_type: str,
    now: Optional[datetime] = None,
    ttl_seconds: float = DEFAULT_TTL_SECONDS,
) -> SessionState:
    record = load_session_state(paths).sessions.get(review_type)
    if record is None:
        return NoSession()
    if isinstance(record, ActiveSession):
        expires_at = _as_utc(record.since) + timedelta(seconds=ttl_seconds)
        if _now(now) >= expires_at:
            return ExpiredSession(since=record.since, expired_at=expires_at)
    return record


def _update(paths: ProjectPaths, review_type: str, record: Optional[SessionState]) -> None:
    store = load_session_state(paths)
    if record is None:
        store.sessions.pop(review_type, None)
    else:
        store.sessions[review_type] = record
    save_session_state(paths, store)
    logger.info(
        "Codex session updated",
        extra={"context": {"review_type": review_type, "state": record.state if record else "no_session"}},
    )


def mark_session_active(paths: ProjectPaths, review_type: str, now: Optional[datetime] = None) -> ActiveSession:
    record = ActiveSession(since=_now(now))
    _update(paths, review_type, record)
    return record


def mark_session_expired(paths: ProjectPaths, review_type: str, now: Optional[datetime] = None) -> ExpiredSession:
    current = load_session_state(paths).sessions.get(review_type)
    since = current.since if isinstance(current, (ActiveSession, ExpiredSession)) else None
    record = ExpiredSession(since=since, expired_at=_now(now))
    _update(paths, review_type, record)
    return record


def clear_session(paths: ProjectPaths, review_type: str) -> None:
    _update(paths, review_type, None)


def record_invocation(
    paths: ProjectPaths,
    review_type: str,
    outcome: InvocationOutcome,
    now: Optional[datetime] = None,
    ttl_seconds: float = DEFAULT_TTL_SECONDS,
) -> SessionState:
    """Only a completed invocation makes a session resumable; a timeout leaves the record untouched."""
    if outcome == InvocationOutcome.success:
        return mark_session_active(paths, review_type, now)
    if outcome == InvocationOutcome.session_expired:
        return mark_session_expired(paths, review_type, now)
    return session_status(paths, review_type, now, ttl_seconds)
