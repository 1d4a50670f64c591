"""
Gate C: blindness of the per-stage review bundles.

Each bundle under the latest ``.task/blind-audit-<ts>/`` run directory is
walked and every file is checked against the stage's deny rules, by file
name first and by content signature second. All violations across all
bundles are collected and reported together, since fixing one never
affects another.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from artifacts import find_latest_run_dir, read_text, walk_files
from config import PipelineConfig, ProjectPaths
from content_signatures import (
    ATTACK_PLAN_FILE_MARKER,
    ATTACK_PLAN_OUTPUT_PATTERNS,
    DEEP_EXPLOIT_FILE_MARKER,
    DEEP_EXPLOIT_OUTPUT_PATTERNS,
    SPEC_FILENAMES,
    Pattern,
    contains_code,
    contains_spec_prose,
    first_match,
)
from error_handler import GateOutcome, block
from logger import get_logger

logger = get_logger(__name__)

AGENTS = frozenset({"strategist-codex", "spec-compliance-reviewer", "exploit-hunter", "sc-implementer"})

CODE_DIRS = ("src", "test")
REVIEWS_DIR = "reviews"
# interface sketches in the design and the manifest may legitimately quote code
STAGE3_CODE_EXEMPT_MARKERS = ("design", "MANIFEST")


@dataclass(frozen=True)
class Violation:
    kind: str
    message: str
    file: Optional[Path] = None
    pattern: Optional[str] = None


@dataclass(frozen=True)
class IsolationRule:
    """Keeps one adversarial reviewer's output out of the other's bundle."""

    file_marker: str
    patterns: Sequence[Pattern]
    label: str


STAGE4A_ISOLATION = IsolationRule(DEEP_EXPLOIT_FILE_MARKER, DEEP_EXPLOIT_OUTPUT_PATTERNS, "Codex output")
STAGE4B_ISOLATION = IsolationRule(ATTACK_PLAN_FILE_MARKER, ATTACK_PLAN_OUTPUT_PATTERNS, "Opus output")


def _relative(path: Path, root: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return path.as_posix()


def validate_stage3_bundle(bundle_dir: Path) -> list[Violation]:
    """The spec-compliance bundle must not contain code."""
    violations = []
    for path in walk_files(bundle_dir):
        if path.suffix == ".sol":
            violations.append(
                Violation("SOLIDITY_FILE", f"Stage 3 bundle contains Solidity file: {path.name}", path)
            )
            continue

        content = read_text(path)
        if not content:
            continue
        pattern = contains_code(content)
        if pattern is None:
            continue
        relative = _relative(path, bundle_dir)
        if any(marker in relative for marker in STAGE3_CODE_EXEMPT_MARKERS):
            continue
        violations.append(
            Violation("CODE_CONTENT", f"Stage 3 file contains code pattern: {path.name}", path, pattern.pattern)
        )
    return violations


def validate_code_review_bundle(
    bundle_dir: Path,
    stage: str = "Stage 4",
    isolation: Optional[IsolationRule] = None,
) -> list[Violation]:
    """Code-side bundles (4, 4A, 4B): no spec prose, optionally no rival reviewer output."""
    violations = []
    for path in walk_files(bundle_dir, skip_dirs=CODE_DIRS):
        if isolation is not None and isolation.file_marker in path.name:
            violations.append(
                Violation(
                    "ISOLATION_FILE",
                    f"{stage} bundle contains {isolation.label} file: {path.name}",
                    path,
                )
            )
            continue

        if path.name in SPEC_FILENAMES:
            violations.append(Violation("SPEC_FILE", f"{stage} bundle contains spec file: {path.name}", path))
            continue

        content = read_text(path)
        if not content:
            continue

        prose = contains_spec_prose(content)
        if prose is not None:
            violations.append(
                Violation("SPEC_PROSE", f"{stage} file contains spec prose: {path.name}", path, prose.pattern)
            )

        if isolation is not None:
            leaked = first_match(isolation.patterns, content)
            if leaked is not None:
                violations.append(
                    Violation(
                        "ISOLATION_CONTENT",
                        f"{stage} file contains {isolation.label}: {path.name}",
                        path,
                        leaked.pattern,
                    )
                )
    return violations


def validate_stage4_bundle(bundle_dir: Path) -> list[Violation]:
    return validate_code_review_bundle(bundle_dir, "Stage 4")


def validate_stage4a_bundle(bundle_dir: Path) -> list[Violation]:
    return validate_code_review_bundle(bundle_dir, "Stage 4A", STAGE4A_ISOLATION)


def validate_stage4b_bundle(bundle_dir: Path) -> list[Violation]:
    return validate_code_review_bundle(bundle_dir, "Stage 4B", STAGE4B_ISOLATION)


def _review_names(reviews_dir: Path) -> list[str]:
    try:
        return [entry.name for entry in reviews_dir.iterdir()]
    except OSError:
        return []


def validate_stage4c_bundle(bundle_dir: Path) -> list[Violation]:
    """Dispute bundle: no spec prose outside reviews/, and both adversarial reviews inside it."""
    violations = []
    for path in walk_files(bundle_dir, skip_dirs=CODE_DIRS + (REVIEWS_DIR,)):
        if path.name in SPEC_FILENAMES:
            violations.append(Violation("SPEC_FILE", f"Stage 4C bundle contains spec file: {path.name}", path))
            continue

        content = read_text(path)
        if not content:
            continue
        prose = contains_spec_prose(content)
        if prose is not None:
            violations.append(
                Violation("SPEC_PROSE", f"Stage 4C file contains spec prose: {path.name}", path, prose.pattern)
            )

    review_names = _review_names(bundle_dir / REVIEWS_DIR)
    if not any(ATTACK_PLAN_FILE_MARKER in name for name in review_names):
        violations.append(Violation("MISSING_REVIEW", "Stage 4C bundle missing Opus attack plan review"))
    if not any(DEEP_EXPLOIT_FILE_MARKER in name for name in review_names):
        violations.append(Violation("MISSING_REVIEW", "Stage 4C bundle missing Codex deep exploit review"))
    return violations


STAGE_BUNDLES = (
    ("bundle-stage3", validate_stage3_bundle),
    ("bundle-stage4", validate_stage4_bundle),
    ("bundle-stage4a", validate_stage4a_bundle),
    ("bundle-stage4b", validate_stage4b_bundle),
    ("bundle-stage4c", validate_stage4c_bundle),
)


def validate_run_bundles(run_dir: Path) -> list[Violation]:
    violations: list[Violation] = []
    for name, validator in STAGE_BUNDLES:
        bundle_dir = run_dir / name
        if bundle_dir.is_dir():
            found = validator(bundle_dir)
            logger.debug(
                "Validated bundle",
                extra={"context": {"bundle": name, "violations": len(found)}},
            )
            violations.extend(found)
    return violations


def format_violations(violations: Sequence[Violation]) -> str:
    lines = "\n".join(f"  - {violation.message}" for violation in violations)
    return f"BLINDNESS VIOLATION (Gate C): {len(violations)} violations found:\n{lines}"


def validate_gate_c(paths: ProjectPaths) -> GateOutcome:
    run_dir = find_latest_run_dir(paths.task_dir)
    if run_dir is None:
        return None
    violations = validate_run_bundles(run_dir)
    if not violations:
        return None
    return block(format_violations(violations))


def validate_for_agent(agent: str, paths: ProjectPaths, pipeline: PipelineConfig) -> GateOutcome:
    if agent not in AGENTS:
        return None
    return validate_gate_c(paths)


def is_strict(pipeline: PipelineConfig) -> bool:
    return pipeline.blind_audit_sc.is_blind_strict
