"""
Reviewer and calibration-sprint output validation.

Plan and code reviews must account for every acceptance criterion in
``.task/user-story.json``; "approved" and "known incomplete" are never
accepted together. Code reviews that carry security findings must list
them one concrete bug per entry. Calibration agents are checked on
whichever calibration artifacts they wrote in the last few seconds.
Review results always block; there is no warn-only mode here.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from artifacts import LoadedArtifact, is_recent, load_artifact, resolve_just_written_artifact
from config import PipelineConfig, ProjectPaths
from error_handler import GateOutcome, block
from logger import get_logger
from normalize import findings_of, validate_per_vuln_format
from schemas import (
    ArtifactModel,
    ArtifactStatus,
    DetectCoverage,
    DiscoveryScoreboard,
    ExploitReplay,
    PatchClosure,
    ReviewArtifact,
    UserStory,
)

logger = get_logger(__name__)

CALIBRATION_WINDOW_SECONDS = 60

PLAN_REVIEW_FILES = ("review-sonnet.json", "review-opus.json")
CODE_REVIEW_FILES = ("code-review-sonnet.json", "code-review-opus.json")
CODEX_PLAN_REVIEW_FILE = "review-codex.json"
CODEX_CODE_REVIEW_FILE = "code-review-codex.json"

REVIEWER_AGENTS = frozenset({"plan-reviewer", "code-reviewer", "codex-reviewer"})
CALIBRATION_AGENTS = frozenset(
    {
        "sc-implementer",
        "exploit-hunter",
        "redteam-verifier",
        "sc-code-reviewer",
        "security-auditor",
        "opus-attack-planner",
    }
)
AGENTS = REVIEWER_AGENTS | CALIBRATION_AGENTS

INCOMPLETE_AC_STATUSES = frozenset({"NOT_IMPLEMENTED", "PARTIAL"})
HINT_LEVELS = ("none", "low", "medium", "high")
SCOREBOARD_REQUIRED_FIELDS = (
    "entrypoints_total",
    "entrypoints_reviewed",
    "high_med_candidates",
    "validated_high_med",
    "hint_level",
)


def _joined(values: list[Any]) -> str:
    return ", ".join(str(value) for value in values)


def validate_plan_review(review: ReviewArtifact, user_story: Optional[UserStory]) -> GateOutcome:
    ac_ids = user_story.acceptance_criteria_ids if user_story else []
    if not ac_ids:
        return None

    coverage = review.requirements_coverage
    if coverage is None:
        return block(
            "Review missing requirements_coverage field. "
            "Must verify all acceptance criteria from user-story.json."
        )

    covered = {entry.ac_id for entry in coverage.mapping}
    missing_acs = [ac_id for ac_id in ac_ids if ac_id not in covered]
    if missing_acs:
        return block(
            f"Review did not verify these ACs: {_joined(missing_acs)}. "
            "Re-run review with complete verification."
        )

    if review.status == ArtifactStatus.approved.value and coverage.missing:
        return block(
            f"Cannot approve with missing requirements: {_joined(coverage.missing)}. "
            "Status must be needs_changes."
        )
    return None


def validate_code_review(review: ReviewArtifact, user_story: Optional[UserStory]) -> GateOutcome:
    ac_ids = user_story.acceptance_criteria_ids if user_story else []
    if not ac_ids:
        return None

    verification = review.acceptance_criteria_verification
    if verification is None:
        return block(
            "Review missing acceptance_criteria_verification field. "
            "Must verify all acceptance criteria from user-story.json."
        )

    verified = {detail.ac_id for detail in verification.details}
    missing_acs = [ac_id for ac_id in ac_ids if ac_id not in verified]
    if missing_acs:
        return block(
            f"Review did not verify these ACs: {_joined(missing_acs)}. "
            "Re-run review with complete verification."
        )

    incomplete = [
        detail.ac_id
        for detail in verification.details
        if (detail.status or "").upper() in INCOMPLETE_AC_STATUSES
    ]
    if review.status == ArtifactStatus.approved.value and incomplete:
        return block(
            f"Cannot approve with incomplete ACs: {_joined(incomplete)}. "
            "All ACs must be IMPLEMENTED. Status must be needs_changes."
        )
    return None


def validate_security_findings(review: Optional[ReviewArtifact]) -> GateOutcome:
    if review is None:
        return None
    data = review.model_dump()
    findings = findings_of(data)
    if not isinstance(findings, list) or not findings:
        return None

    error = validate_per_vuln_format(data)
    if error:
        return block(
            f"Per-vulnerability format violation: {error}. "
            "Each finding must have unique id, file reference, and severity."
        )
    return None


# -- calibration sprints --


def validate_detect_coverage(artifact: Optional[DetectCoverage]) -> GateOutcome:
    if artifact is None:
        return block(
            "Missing detect-coverage.json artifact. "
            "Detect Coverage Sprint must write .task/detect-coverage.json."
        )
    if artifact.status != ArtifactStatus.complete.value:
        return block(f'detect-coverage.json status is "{artifact.status}", expected "complete".')
    if artifact.high_med_candidates is None:
        return block("detect-coverage.json missing high_med_candidates (number).")
    if artifact.validated_findings is None:
        return block("detect-coverage.json missing validated_findings array.")
    if not artifact.coverage_notes:
        return block("detect-coverage.json missing or empty coverage_notes.")
    return None


def validate_patch_closure(artifact: Optional[PatchClosure], detect_coverage: Optional[DetectCoverage]) -> GateOutcome:
    if artifact is None:
        return block(
            "Missing patch-closure.json artifact. "
            "Patch Closure Sprint must write .task/patch-closure.json."
        )
    if artifact.patches is None:
        return block("patch-closure.json missing patches array.")

    validated_ids = detect_coverage.validated_ids() if detect_coverage else []
    patched_ids = [patch.target_id for patch in artifact.patches]
    unpatched = [finding_id for finding_id in validated_ids if finding_id not in patched_ids]
    if unpatched:
        return block(f"patch-closure.json missing patches for validated findings: {_joined(unpatched)}")
    return None


def validate_exploit_replay(artifact: Optional[ExploitReplay], patch_closure: Optional[PatchClosure]) -> GateOutcome:
    if artifact is None:
        return block(
            "Missing exploit-replay.json artifact. "
            "Exploit Replay Sprint must write .task/exploit-replay.json."
        )
    if artifact.replays is None:
        return block("exploit-replay.json missing replays array.")

    patched_ids = [patch.target_id for patch in (patch_closure.patches or [])] if patch_closure else []
    replayed_ids = [replay.target_id for replay in artifact.replays]
    unreplayed = [finding_id for finding_id in patched_ids if finding_id not in replayed_ids]
    if unreplayed:
        return block(f"exploit-replay.json missing replay evidence for patched findings: {_joined(unreplayed)}")

    without_verdict = [replay for replay in artifact.replays if not replay.verdict and not replay.status]
    if without_verdict:
        return block(f"exploit-replay.json has {len(without_verdict)} replays without verdict/status.")
    return None


def validate_discovery_scoreboard(artifact: Optional[DiscoveryScoreboard]) -> GateOutcome:
    if artifact is None:
        return block(
            "Missing discovery-scoreboard.json artifact. "
            "Stage 4 must write .task/discovery-scoreboard.json."
        )
    missing = [name for name in SCOREBOARD_REQUIRED_FIELDS if getattr(artifact, name) is None]
    if missing:
        return block(f"discovery-scoreboard.json missing required fields: {', '.join(missing)}")
    if artifact.hint_level not in HINT_LEVELS:
        return block(
            f'discovery-scoreboard.json hint_level "{artifact.hint_level}" not in [{", ".join(HINT_LEVELS)}].'
        )
    return None


def _value_or_none(loaded: LoadedArtifact[Any]) -> Any:
    if loaded.error:
        logger.info(
            "Ignoring invalid companion artifact",
            extra={"context": {"path": str(loaded.path), "error": loaded.error}},
        )
    return loaded.value


CALIBRATION_MODELS: dict[str, type[ArtifactModel]] = {
    "detect-coverage.json": DetectCoverage,
    "patch-closure.json": PatchClosure,
    "exploit-replay.json": ExploitReplay,
    "discovery-scoreboard.json": DiscoveryScoreboard,
}


def _check_calibration(paths: ProjectPaths, name: str) -> GateOutcome:
    loaded = load_artifact(paths.task(name), CALIBRATION_MODELS[name])
    if loaded.error:
        return block(loaded.schema_reason())
    artifact = loaded.value

    if name == "patch-closure.json":
        detect = _value_or_none(load_artifact(paths.task("detect-coverage.json"), DetectCoverage))
        return validate_patch_closure(artifact, detect)
    if name == "exploit-replay.json":
        patches = _value_or_none(load_artifact(paths.task("patch-closure.json"), PatchClosure))
        return validate_exploit_replay(artifact, patches)
    if name == "discovery-scoreboard.json":
        return validate_discovery_scoreboard(artifact)
    return validate_detect_coverage(artifact)


def validate_calibration_artifacts(
    paths: ProjectPaths,
    window_seconds: float = CALIBRATION_WINDOW_SECONDS,
    now: Optional[float] = None,
) -> GateOutcome:
    """Only artifacts written within the window count; an absent artifact means no calibration work."""
    for name in CALIBRATION_MODELS:
        path = paths.task(name)
        if not path.exists() or not is_recent(path, window_seconds, now):
            continue
        outcome = _check_calibration(paths, name)
        if outcome is not None:
            return outcome
    return None


def review_candidates(agent: str, paths: ProjectPaths) -> tuple[list[Path], bool]:
    """Candidate files for a reviewer agent, and whether they are plan reviews."""
    if agent == "plan-reviewer":
        return [paths.task(name) for name in PLAN_REVIEW_FILES], True
    if agent == "code-reviewer":
        return [paths.task(name) for name in CODE_REVIEW_FILES], False
    # codex-reviewer runs at both ends; an implementation result means code review
    if paths.task("impl-result.json").exists():
        return [paths.task(CODEX_CODE_REVIEW_FILE)], False
    return [paths.task(CODEX_PLAN_REVIEW_FILE)], True


def validate_reviewer_output(agent: str, paths: ProjectPaths) -> GateOutcome:
    candidates, is_plan_review = review_candidates(agent, paths)
    review_path = resolve_just_written_artifact(candidates)
    if review_path is None:
        return None

    loaded = load_artifact(review_path, ReviewArtifact)
    if loaded.missing:
        return None
    if loaded.value is None:
        return block(loaded.schema_reason())
    review = loaded.value

    user_story = _value_or_none(load_artifact(paths.task("user-story.json"), UserStory))
    if is_plan_review:
        return validate_plan_review(review, user_story)

    outcome = validate_code_review(review, user_story)
    if outcome is not None:
        return outcome
    return validate_security_findings(review)


def validate_for_agent(
    agent: str,
    paths: ProjectPaths,
    pipeline: PipelineConfig,
    calibration_window_seconds: float = CALIBRATION_WINDOW_SECONDS,
) -> GateOutcome:
    if agent in CALIBRATION_AGENTS:
        return validate_calibration_artifacts(paths, calibration_window_seconds)
    if agent in REVIEWER_AGENTS:
        return validate_reviewer_output(agent, paths)
    return None


def is_strict(pipeline: PipelineConfig) -> bool:
    return True
