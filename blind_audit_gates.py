"""
Gates A, B, D and F of the blind-audit pipeline.

Gate C (bundle blindness) lives in bundle_validator and Gate E (red-team
closure) in redteam_closure; both run from their own hooks.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from artifacts import any_exists, load_artifact, read_nonempty_text, read_text
from config import BlindAuditConfig, PipelineConfig, ProjectPaths
from content_signatures import (
    ACCEPTANCE_CRITERIA_AUDIT_RE,
    ACCEPTANCE_CRITERIA_ID_RE,
    ALL_TESTS_PASSED_RE,
    DECISION_RE,
    EXPLOIT_HYPOTHESES_RE,
    FORGE_FAIL_MARK_RE,
    FORGE_FAILURE_RE,
    FORGE_PASS_MARK_RE,
    GATE_CHECKLIST_RE,
    INVARIANT_COVERAGE_RE,
    INVARIANT_MAPPING_AUDIT_RE,
    INVARIANT_TABLE_ROW_RE,
    INVARIANT_TEST_MAPPING_RE,
    INVARIANT_VERDICT_TABLE_RE,
    INVARIANT_VIOLATION_RE,
    NUMBERED_HYPOTHESIS_RE,
    Pattern,
    found_invariant_categories,
)
from error_handler import GateOutcome, block
from schemas import SpecArtifact, StatusArtifact

GateCheck = Callable[[ProjectPaths, BlindAuditConfig], GateOutcome]

GAS_SNAPSHOT_FILES = (".gas-snapshot", ".gas-snapshot-after", "gas-snapshots.md")
APPROVED = "APPROVED"


@dataclass(frozen=True)
class RequiredSection:
    patterns: Sequence[Pattern]
    name: str

    def present_in(self, content: str) -> bool:
        return any(pattern.search(content) for pattern in self.patterns)


@dataclass(frozen=True)
class ReviewRequirements:
    gate: str
    review_file: str
    artifact_file: str
    sections: Sequence[RequiredSection]
    require_approved: bool = False


SPEC_COMPLIANCE_REVIEW = ReviewRequirements(
    gate="GATE D",
    review_file="spec-compliance-review.md",
    artifact_file="spec-compliance-review.json",
    sections=(
        RequiredSection((INVARIANT_MAPPING_AUDIT_RE, INVARIANT_VERDICT_TABLE_RE), "Invariant-Test Mapping Audit"),
        RequiredSection((ACCEPTANCE_CRITERIA_AUDIT_RE,), "Acceptance Criteria Audit"),
    ),
)

EXPLOIT_HUNT_REVIEW = ReviewRequirements(
    gate="GATE D",
    review_file="exploit-hunt-review.md",
    artifact_file="exploit-hunt-review.json",
    sections=(
        RequiredSection((EXPLOIT_HYPOTHESES_RE, NUMBERED_HYPOTHESIS_RE), "Attempted Exploit Hypotheses"),
        RequiredSection((INVARIANT_COVERAGE_RE,), "Invariant Coverage"),
    ),
)

FINAL_GATE_REVIEW = ReviewRequirements(
    gate="GATE F",
    review_file="final-codex-gate.md",
    artifact_file="final-gate.json",
    sections=(RequiredSection((GATE_CHECKLIST_RE,), "Gate Checklist"),),
    require_approved=True,
)


def validate_gate_a(paths: ProjectPaths, config: BlindAuditConfig) -> GateOutcome:
    """Spec completeness: invariants, acceptance criteria, invariant-test mapping."""
    threat_model = read_nonempty_text(paths.docs("security", "threat-model.md"))
    if not threat_model:
        return block("GATE A FAILED: docs/security/threat-model.md is missing.")

    if not read_nonempty_text(paths.docs("architecture", "design.md")):
        return block("GATE A FAILED: docs/architecture/design.md is missing.")

    test_plan = read_nonempty_text(paths.docs("testing", "test-plan.md"))
    if not test_plan:
        return block("GATE A FAILED: docs/testing/test-plan.md is missing.")

    if not found_invariant_categories(threat_model):
        return block("GATE A FAILED: No numbered invariants found (IC-*, IS-*, IA-*, IT-*, IB-*).")

    if not ACCEPTANCE_CRITERIA_ID_RE.search(threat_model):
        return block("GATE A FAILED: No acceptance criteria found (AC-SEC-*, AC-FUNC-*).")

    if not (INVARIANT_TEST_MAPPING_RE.search(test_plan) or INVARIANT_TABLE_ROW_RE.search(test_plan)):
        return block("GATE A FAILED: No invariant-test mapping table in test-plan.md.")

    loaded = load_artifact(paths.task("codex-spec.json"), SpecArtifact)
    if loaded.missing:
        return block("GATE A FAILED: .task/codex-spec.json artifact missing.")
    if loaded.value is None:
        return block(f"GATE A FAILED: {loaded.schema_reason()}")

    uncovered = loaded.value.uncovered_invariants()
    if uncovered:
        return block(f"GATE A FAILED: Unmapped invariants: {', '.join(uncovered)}")
    return None


def _forge_log_has_failures(test_log: str) -> bool:
    # "[FAIL" without a single "[PASS" is a real failure; anything else may
    # just be a log format the patterns do not understand
    if not FORGE_FAILURE_RE.search(test_log) or ALL_TESTS_PASSED_RE.search(test_log):
        return False
    fail_count = len(FORGE_FAIL_MARK_RE.findall(test_log))
    pass_count = len(FORGE_PASS_MARK_RE.findall(test_log))
    return fail_count > 0 and pass_count == 0


def validate_gate_b(paths: ProjectPaths, config: BlindAuditConfig) -> GateOutcome:
    """Evidence presence: forge log, invariant log, gas snapshot."""
    test_log_path = paths.reports("forge-test.log")
    if not test_log_path.exists():
        return block("GATE B FAILED: reports/forge-test.log missing.")

    test_log = read_text(test_log_path)
    if test_log and _forge_log_has_failures(test_log):
        return block("GATE B FAILED: forge tests have failures.")

    if config.enable_invariants:
        # optional, but a present log must be clean
        invariant_log = read_text(paths.reports("invariant-test.log"))
        if invariant_log and INVARIANT_VIOLATION_RE.search(invariant_log):
            return block("GATE B FAILED: Invariant test violations detected.")

    if not any_exists(paths.reports(name) for name in GAS_SNAPSHOT_FILES):
        return block("GATE B FAILED: No gas snapshot evidence found.")
    return None


def validate_review(paths: ProjectPaths, requirements: ReviewRequirements) -> GateOutcome:
    gate = requirements.gate
    review_file = requirements.review_file
    review = read_nonempty_text(paths.docs("reviews", review_file))
    if not review:
        return block(f"{gate} FAILED: {review_file} missing.")

    decision = DECISION_RE.search(review)
    if not decision:
        return block(f"{gate} FAILED: {review_file} missing Decision field.")
    if requirements.require_approved and decision.group(1) != APPROVED:
        return block(f"{gate} FAILED: Final gate decision is {decision.group(1)}, not {APPROVED}.")

    for section in requirements.sections:
        if not section.present_in(review):
            return block(f"{gate} FAILED: {review_file} missing {section.name} section.")

    artifact_path: Path = paths.task(requirements.artifact_file)
    loaded = load_artifact(artifact_path, StatusArtifact)
    if loaded.missing:
        return block(f"{gate} FAILED: .task/{requirements.artifact_file} missing.")
    if loaded.value is None:
        return block(f"{gate} FAILED: {loaded.schema_reason()}")
    return None


def validate_gate_d_spec_compliance(paths: ProjectPaths, config: BlindAuditConfig) -> GateOutcome:
    return validate_review(paths, SPEC_COMPLIANCE_REVIEW)


def validate_gate_d_exploit_hunt(paths: ProjectPaths, config: BlindAuditConfig) -> GateOutcome:
    return validate_review(paths, EXPLOIT_HUNT_REVIEW)


def validate_gate_f(paths: ProjectPaths, config: BlindAuditConfig) -> GateOutcome:
    return validate_review(paths, FINAL_GATE_REVIEW)


AGENT_GATES: dict[str, GateCheck] = {
    "strategist-codex": validate_gate_a,
    "sc-implementer": validate_gate_b,
    "spec-compliance-reviewer": validate_gate_d_spec_compliance,
    "exploit-hunter": validate_gate_d_exploit_hunt,
    "final-gate-codex": validate_gate_f,
}

# redteam-verifier belongs to the pipeline but is checked by Gate E
AGENTS = frozenset(AGENT_GATES) | {"redteam-verifier"}


def validate_for_agent(agent: str, paths: ProjectPaths, pipeline: PipelineConfig) -> GateOutcome:
    check: Optional[GateCheck] = AGENT_GATES.get(agent)
    if check is None:
        return None
    return check(paths, pipeline.blind_audit_sc)


def is_strict(pipeline: PipelineConfig) -> bool:
    return pipeline.blind_audit_sc.is_strict
