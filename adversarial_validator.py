"""
Validation of the adversarial stages of the blind-audit pipeline:

* 4A attack plan (opus-attack-planner): hypothesis quotas and structure
* 4B deep exploit review (codex-deep-exploit-hunter): refutations with evidence
* 4C dispute resolution (dispute-resolver): verdicts backed by the right follow-up

Unlike the gates, every problem is collected and reported in one block.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from artifacts import find_latest_run_dir, load_first_artifact
from config import AdversarialConfig, PipelineConfig, ProjectPaths
from error_handler import GateOutcome, block
from schemas import ArtifactModel, AttackPlan, DeepExploitReview, DisputeResolution

AGENTS = frozenset({"opus-attack-planner", "codex-deep-exploit-hunter", "dispute-resolver"})

CONFIRMED = "CONFIRMED"
DISPROVEN = "DISPROVEN"
UNCLEAR = "UNCLEAR"
TOP_PRIORITY_COUNT = 5


def _count(value: Any) -> float:
    return value if isinstance(value, (int, float)) else 0


def _load(run_dir: Path, paths: ProjectPaths, name: str, model: type[ArtifactModel], errors: list[str]) -> Any:
    loaded = load_first_artifact([run_dir / name, paths.task(name)], model)
    if loaded.missing:
        errors.append(f"Missing {name} artifact")
        return None
    if loaded.value is None:
        errors.append(loaded.schema_reason())
    return loaded.value


def validate_attack_plan(run_dir: Path, paths: ProjectPaths, config: AdversarialConfig) -> list[str]:
    errors: list[str] = []
    plan: Optional[AttackPlan] = _load(run_dir, paths, "opus-attack-plan.json", AttackPlan, errors)
    if plan is None:
        return errors

    summary = plan.hypotheses
    if summary is None:
        errors.append("Missing hypotheses summary in opus-attack-plan.json")
    else:
        total = _count(summary.total)
        economic = _count(summary.economic_mev)
        dos = _count(summary.dos_gas_grief)
        if total < config.min_attack_hypotheses:
            errors.append(f"Insufficient hypotheses: {total} < {config.min_attack_hypotheses} required")
        if economic < config.min_economic_hypotheses:
            errors.append(
                f"Insufficient Economic/MEV hypotheses: {economic} < {config.min_economic_hypotheses} required"
            )
        if dos < config.min_dos_hypotheses:
            errors.append(f"Insufficient DoS/Gas grief hypotheses: {dos} < {config.min_dos_hypotheses} required")

    if plan.attack_hypotheses is None:
        errors.append("Missing attack_hypotheses array")
    else:
        for hypothesis in plan.attack_hypotheses:
            if not hypothesis.preconditions:
                errors.append(f"Hypothesis {hypothesis.id}: Missing preconditions")
            if not hypothesis.attack_steps:
                errors.append(f"Hypothesis {hypothesis.id}: Missing attack steps")
            if not hypothesis.invariant_violated:
                errors.append(f"Hypothesis {hypothesis.id}: Missing invariant mapping")
            if not hypothesis.demonstration_test:
                errors.append(f"Hypothesis {hypothesis.id}: Missing demonstration test")

    if not plan.top_5_priority or len(plan.top_5_priority) < TOP_PRIORITY_COUNT:
        errors.append("Missing or incomplete top_5_priority ranking")

    if plan.blindness_verified is not True:
        errors.append("Blindness not verified in artifact")
    return errors


def validate_deep_exploit_review(run_dir: Path, paths: ProjectPaths, config: AdversarialConfig) -> list[str]:
    errors: list[str] = []
    review: Optional[DeepExploitReview] = _load(
        run_dir, paths, "codex-deep-exploit-review.json", DeepExploitReview, errors
    )
    if review is None:
        return errors

    refuted = review.refuted_hypotheses
    if refuted is None:
        errors.append("Missing refuted_hypotheses array")
    elif len(refuted) < config.min_refuted_hypotheses:
        errors.append(
            f"Insufficient refuted hypotheses: {len(refuted)} < {config.min_refuted_hypotheses} required"
        )
    else:
        for refutation in refuted:
            if not refutation.why_it_fails:
                errors.append(f"Refutation {refutation.id}: Missing evidence (why_it_fails)")
            if not refutation.guard_code_ref:
                errors.append(f"Refutation {refutation.id}: Missing code reference")

    invalidated = review.false_positives_invalidated
    if invalidated is None:
        errors.append("Missing false_positives_invalidated array")
    elif len(invalidated) < config.min_false_positives_invalidated:
        errors.append(
            f"Insufficient false positives invalidated: {len(invalidated)} < "
            f"{config.min_false_positives_invalidated} required"
        )
    else:
        for false_positive in invalidated:
            if not false_positive.evidence:
                errors.append(f"False positive {false_positive.id}: Missing evidence")
            if not false_positive.code_ref:
                errors.append(f"False positive {false_positive.id}: Missing code reference")

    if review.blindness_verified is not True:
        errors.append("Blindness not verified in artifact")
    if review.opus_isolation_verified is not True:
        errors.append("Opus isolation not verified - Codex may have seen Opus output")
    return errors


def validate_dispute_resolution(run_dir: Path, paths: ProjectPaths, config: AdversarialConfig) -> list[str]:
    errors: list[str] = []
    resolution: Optional[DisputeResolution] = _load(
        run_dir, paths, "dispute-resolution.json", DisputeResolution, errors
    )
    if resolution is None:
        return errors

    if resolution.dispute_details is None:
        errors.append("Missing dispute_details array")
    else:
        for dispute in resolution.dispute_details:
            verdict = (dispute.verdict or "").upper()
            if not verdict:
                errors.append(f"Dispute {dispute.id}: Missing verdict")
            elif verdict == CONFIRMED:
                if not dispute.red_team_issue:
                    errors.append(f"Dispute {dispute.id}: CONFIRMED but no red_team_issue created")
                if not dispute.has_reproduction:
                    errors.append(f"Dispute {dispute.id}: CONFIRMED but missing reproduction test")
            elif verdict == DISPROVEN:
                if not dispute.refutation_evidence and not dispute.justification:
                    errors.append(f"Dispute {dispute.id}: DISPROVEN but no refutation evidence")
            elif verdict == UNCLEAR:
                if not dispute.add_test_task:
                    errors.append(f"Dispute {dispute.id}: UNCLEAR but no add_test_task created")

            if not dispute.opus_argument and not dispute.codex_argument:
                errors.append(f"Dispute {dispute.id}: Missing prosecutor/defender arguments")

    counts = resolution.disputes
    if counts is not None:
        if _count(counts.confirmed_high) > 0 or _count(counts.confirmed_med) > 0:
            if not resolution.red_team_issues_created:
                errors.append("CONFIRMED disputes exist but no red_team_issues_created")
        if _count(counts.unclear) > 0:
            if not resolution.rerun_required:
                errors.append("UNCLEAR disputes exist but rerun_required is false")
            if not resolution.unclear_tasks_created:
                errors.append("UNCLEAR disputes exist but no unclear_tasks_created")

    if resolution.rerun_round is not None and resolution.rerun_round >= config.dispute_max_rounds:
        errors.append(f"Max dispute rounds ({config.dispute_max_rounds}) reached - escalate to user")

    if resolution.blindness_verified is not True:
        errors.append("Blindness not verified in artifact")
    return errors


STAGE_VALIDATORS = {
    "opus-attack-planner": validate_attack_plan,
    "codex-deep-exploit-hunter": validate_deep_exploit_review,
    "dispute-resolver": validate_dispute_resolution,
}


def format_errors(errors: list[str]) -> str:
    lines = "\n".join(f"  - {error}" for error in errors)
    return f"ADVERSARIAL VALIDATION FAILED:\n{lines}"


def validate_for_agent(agent: str, paths: ProjectPaths, pipeline: PipelineConfig) -> GateOutcome:
    validator = STAGE_VALIDATORS.get(agent)
    if validator is None:
        return None

    config = pipeline.blind_audit_sc.adversarial
    if not config.adversarial_mode:
        return None

    run_dir = find_latest_run_dir(paths.task_dir)
    if run_dir is None:
        return None

    errors = validator(run_dir, paths, config)
    if not errors:
        return None
    return block(format_errors(errors))


def is_strict(pipeline: PipelineConfig) -> bool:
    return True
