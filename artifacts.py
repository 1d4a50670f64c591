from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Iterable, Iterator, Optional, TypeVar, Union

from pydantic import BaseModel, ValidationError

from logger import get_logger
from normalize import read_and_normalize_json

logger = get_logger(__name__)

RUN_DIR_PREFIX = "blind-audit-"

ModelT = TypeVar("ModelT", bound=BaseModel)
PathLike = Union[str, Path]


def read_text(file_path: PathLike) -> Optional[str]:
    """File content, or None when the file is absent or unreadable."""
    path = Path(file_path)
    try:
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def read_nonempty_text(file_path: PathLike) -> Optional[str]:
    content = read_text(file_path)
    return content or None


def any_exists(paths: Iterable[PathLike]) -> bool:
    return any(Path(path).exists() for path in paths)


def mtime_of(file_path: PathLike) -> Optional[float]:
    try:
        return Path(file_path).stat().st_mtime
    except OSError:
        return None


def is_recent(file_path: PathLike, window_seconds: float, now: Optional[float] = None) -> bool:
    mtime = mtime_of(file_path)
    if mtime is None:
        return False
    current = time.time() if now is None else now
    return current - mtime <= window_seconds


def _schema_error_summary(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "<root>"
    return f"{location}: {first.get('msg', 'invalid value')}"


@dataclass(frozen=True)
class LoadedArtifact(Generic[ModelT]):
    path: Path
    value: Optional[ModelT] = None
    error: Optional[str] = None
    missing: bool = False

    @property
    def ok(self) -> bool:
        return self.value is not None

    def schema_reason(self) -> str:
        return f"{self.path.name} does not match the expected schema: {self.error}"


def load_artifact(file_path: PathLike, model: type[ModelT]) -> LoadedArtifact[ModelT]:
    """
    Read, extract and normalize a JSON artifact, then validate it once
    against ``model``.

    A missing or unparsable file comes back with ``missing=True`` so
    callers can report "artifact is missing" the same way for both. A
    document that parses but is not an object, or that fails validation,
    carries the first schema error instead.
    """
    path = Path(file_path)
    raw = read_and_normalize_json(path)
    if raw is None:
        return LoadedArtifact(path=path, missing=True)
    if not isinstance(raw, dict):
        return LoadedArtifact(path=path, error=f"expected a JSON object, got {type(raw).__name__}")
    try:
        return LoadedArtifact(path=path, value=model.model_validate(raw))
    except ValidationError as exc:
        logger.info(
            "Artifact failed schema validation",
            extra={"context": {"path": str(path), "errors": exc.error_count()}},
        )
        return LoadedArtifact(path=path, error=_schema_error_summary(exc))


def load_first_artifact(candidates: Iterable[PathLike], model: type[ModelT]) -> LoadedArtifact[ModelT]:
    """First candidate that is present wins; the last miss is returned otherwise."""
    loaded: Optional[LoadedArtifact[ModelT]] = None
    for candidate in candidates:
        loaded = load_artifact(candidate, model)
        if not loaded.missing:
            return loaded
    if loaded is None:
        raise ValueError("load_first_artifact needs at least one candidate path")
    return loaded


def resolve_just_written_artifact(
    candidate_paths: Iterable[PathLike],
    since: Optional[float] = None,
) -> Optional[Path]:
    """
    Best guess at which candidate the finishing agent just wrote: the one
    with the newest mtime, optionally ignoring anything older than ``since``.

    Known limitation: two candidates sharing one mtime (coarse filesystem
    resolution) resolve to whichever was compared first.
    """
    newest: Optional[Path] = None
    newest_mtime = float("-inf")
    for candidate in candidate_paths:
        path = Path(candidate)
        mtime = mtime_of(path)
        if mtime is None or not path.is_file():
            continue
        if since is not None and mtime < since:
            continue
        if mtime > newest_mtime:
            newest, newest_mtime = path, mtime
    return newest


def _run_timestamp(name: str) -> int:
    suffix = name[len(RUN_DIR_PREFIX) :]
    digits = ""
    for char in suffix:
        if not char.isdigit():
            break
        digits += char
    return int(digits) if digits else 0


def find_latest_run_dir(task_dir: PathLike) -> Optional[Path]:
    """Newest ``blind-audit-<timestamp>`` directory under ``task_dir``."""
    root = Path(task_dir)
    try:
        entries = [entry for entry in root.iterdir() if entry.is_dir() and entry.name.startswith(RUN_DIR_PREFIX)]
    except OSError:
        return None
    if not entries:
        return None
    return max(entries, key=lambda entry: _run_timestamp(entry.name))


def iter_subdirectories(directory: PathLike) -> Iterator[Path]:
    root = Path(directory)
    try:
        entries = sorted(root.iterdir())
    except OSError:
        return
    for entry in entries:
        if entry.is_dir():
            yield entry


def walk_files(directory: PathLike, skip_dirs: Iterable[str] = ()) -> Iterator[Path]:
    """Every file below ``directory``, pruning directories named in ``skip_dirs``."""
    skipped = set(skip_dirs)
    for root, dirs, files in os.walk(directory):
        dirs[:] = sorted(d for d in dirs if d not in skipped)
        for name in sorted(files):
            yield Path(root) / name


def as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []
