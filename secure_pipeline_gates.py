"""
Gates 0-4 of the smart-contract-secure pipeline.

Each gate checks the artifacts one agent is expected to leave behind and
returns a GateDecision naming the first problem, or None when the stage
may advance. Gate 1 deliberately lets needs_changes / needs_clarification
through: the orchestrator loops back on those itself.
"""

from __future__ import annotations

from typing import Callable, Optional

from artifacts import any_exists, load_artifact, read_nonempty_text, read_text
from config import PipelineConfig, ProjectPaths, SmartContractSecureConfig
from content_signatures import (
    ACCEPTANCE_CRITERIA_HEADING_RE,
    ACCEPTANCE_CRITERIA_ID_RE,
    ALLOWED_EXTERNAL_CALLS_RE,
    EXTERNAL_CALL_POLICY_RE,
    INVARIANT_ID_RE,
    INVARIANT_LOG_FAILURE_RE,
    INVARIANT_TABLE_ROW_RE,
    INVARIANT_TEST_MAPPING_RE,
    INVARIANTS_HEADING_RE,
    STORAGE_LAYOUT_RE,
    STORAGE_SLOT_TABLE_RE,
    TEST_FAILURE_RE,
    TEST_PASSED_RE,
)
from error_handler import GateOutcome, block
from normalize import validate_artifact_exists
from schemas import (
    REVIEW_STATUSES,
    ArtifactStatus,
    PerfResultArtifact,
    SpecArtifact,
    StaticAnalysisArtifact,
    StatusArtifact,
)

GateCheck = Callable[[ProjectPaths, SmartContractSecureConfig], GateOutcome]


def validate_gate_0(paths: ProjectPaths, config: SmartContractSecureConfig) -> GateOutcome:
    """Codex design: threat model, architecture design and test plan."""
    threat_model = read_nonempty_text(paths.docs("security", "threat-model.md"))
    if not threat_model:
        return block("GATE 0 FAILED: docs/security/threat-model.md is missing. Codex must create threat model.")

    design = read_nonempty_text(paths.docs("architecture", "design.md"))
    if not design:
        return block("GATE 0 FAILED: docs/architecture/design.md is missing. Codex must create architecture design.")

    test_plan = read_nonempty_text(paths.docs("testing", "test-plan.md"))
    if not test_plan:
        return block("GATE 0 FAILED: docs/testing/test-plan.md is missing. Codex must create test plan.")

    if not (INVARIANTS_HEADING_RE.search(threat_model) or INVARIANT_ID_RE.search(threat_model)):
        return block(
            "GATE 0 FAILED: docs/security/threat-model.md missing invariants. "
            "Must include enumerated invariants (IC-*, IS-*, IA-*, IT-*, IB-*)."
        )

    if not (ACCEPTANCE_CRITERIA_HEADING_RE.search(threat_model) or ACCEPTANCE_CRITERIA_ID_RE.search(threat_model)):
        return block(
            "GATE 0 FAILED: docs/security/threat-model.md missing acceptance criteria. "
            "Must include measurable criteria (AC-SEC-*, AC-FUNC-*)."
        )

    if not (STORAGE_LAYOUT_RE.search(design) or STORAGE_SLOT_TABLE_RE.search(design)):
        return block('GATE 0 FAILED: docs/architecture/design.md missing "## Storage Layout" section.')

    if not (EXTERNAL_CALL_POLICY_RE.search(design) or ALLOWED_EXTERNAL_CALLS_RE.search(design)):
        return block('GATE 0 FAILED: docs/architecture/design.md missing "## External Call Policy" section.')

    if not (INVARIANT_TEST_MAPPING_RE.search(test_plan) or INVARIANT_TABLE_ROW_RE.search(test_plan)):
        return block("GATE 0 FAILED: docs/testing/test-plan.md missing invariant-to-test mapping table.")

    loaded = load_artifact(paths.task("codex-design.json"), SpecArtifact)
    if loaded.missing:
        return block("GATE 0 FAILED: .task/codex-design.json artifact is missing.")
    if loaded.value is None:
        return block(f"GATE 0 FAILED: {loaded.schema_reason()}")

    uncovered = loaded.value.uncovered_invariants()
    if uncovered:
        return block(f"GATE 0 FAILED: These invariants have no mapped tests: {', '.join(uncovered)}")
    return None


def validate_gate_1(paths: ProjectPaths, config: SmartContractSecureConfig) -> GateOutcome:
    """Opus design review."""
    if not read_nonempty_text(paths.docs("reviews", "design-review-opus.md")):
        return block("GATE 1 FAILED: docs/reviews/design-review-opus.md is missing.")

    loaded = load_artifact(paths.task("design-review-opus.json"), StatusArtifact)
    if loaded.missing:
        return block("GATE 1 FAILED: .task/design-review-opus.json artifact is missing.")
    if loaded.value is None:
        return block(f"GATE 1 FAILED: {loaded.schema_reason()}")

    status = loaded.value.status
    if not status:
        return block('GATE 1 FAILED: design-review-opus.json missing "status" field.')

    valid = [item.value for item in REVIEW_STATUSES]
    if status not in valid:
        return block(f'GATE 1 FAILED: Invalid status "{status}". Must be one of: {", ".join(valid)}')
    return None


def validate_gate_2(paths: ProjectPaths, config: SmartContractSecureConfig) -> GateOutcome:
    """Implementation: result artifact plus forge and invariant logs."""
    loaded = load_artifact(paths.task("impl-result.json"), StatusArtifact)
    if loaded.missing:
        return block("GATE 2 FAILED: .task/impl-result.json artifact is missing.")
    if loaded.value is None:
        return block(f"GATE 2 FAILED: {loaded.schema_reason()}")

    if loaded.value.status != ArtifactStatus.complete.value:
        return block(f'GATE 2 FAILED: Implementation status is "{loaded.value.status}". Must be "complete".')

    test_log_path = paths.reports("forge-test.log")
    if not test_log_path.exists():
        return block("GATE 2 FAILED: reports/forge-test.log is missing. Must run forge test.")

    test_log = read_text(test_log_path)
    if test_log and TEST_FAILURE_RE.search(test_log) and not TEST_PASSED_RE.search(test_log):
        return block("GATE 2 FAILED: forge test has failures. All tests must pass.")

    if config.enable_invariants:
        invariant_log_path = paths.reports("invariant-test.log")
        if not invariant_log_path.exists():
            return block("GATE 2 FAILED: reports/invariant-test.log is missing (enable_invariants=true).")
        invariant_log = read_text(invariant_log_path)
        if invariant_log and INVARIANT_LOG_FAILURE_RE.search(invariant_log):
            return block("GATE 2 FAILED: Invariant tests have failures.")
    return None


def validate_gate_3(paths: ProjectPaths, config: SmartContractSecureConfig) -> GateOutcome:
    """Static analysis: no unsuppressed high-severity slither findings."""
    loaded = load_artifact(paths.task("static-analysis.json"), StaticAnalysisArtifact)
    if loaded.missing:
        return block("GATE 3 FAILED: .task/static-analysis.json artifact is missing.")
    if loaded.value is None:
        return block(f"GATE 3 FAILED: {loaded.schema_reason()}")

    if config.enable_slither:
        if not paths.reports("slither.json").exists():
            return block("GATE 3 FAILED: reports/slither.json is missing (enable_slither=true).")
        unsuppressed = loaded.value.unsuppressed_ids()
        if unsuppressed:
            return block(
                f"GATE 3 FAILED: High severity findings without suppression: {', '.join(unsuppressed)}. "
                "Fix or add justified suppression."
            )
    return None


def validate_gate_4(paths: ProjectPaths, config: SmartContractSecureConfig) -> GateOutcome:
    """Gas / performance optimisation evidence."""
    loaded = load_artifact(paths.task("perf-result.json"), PerfResultArtifact)
    if loaded.missing:
        return block("GATE 4 FAILED: .task/perf-result.json artifact is missing.")
    if loaded.value is None:
        return block(f"GATE 4 FAILED: {loaded.schema_reason()}")

    missing = validate_artifact_exists(paths.reports("gas-snapshots.md"), "GATE 4", "reports/gas-snapshots.md")
    if missing is not None:
        return missing

    if not any_exists([paths.reports(".gas-snapshot-before"), paths.reports(".gas-snapshot-after")]):
        return block("GATE 4 FAILED: No before/after gas snapshots found.")

    missing = validate_artifact_exists(
        paths.docs("performance", "perf-report.md"), "GATE 4", "docs/performance/perf-report.md"
    )
    if missing is not None:
        return missing

    verification = loaded.value.verification
    if verification is not None:
        if not verification.all_tests_pass:
            return block("GATE 4 FAILED: Tests failed after optimization.")
        if not verification.all_invariants_pass:
            return block("GATE 4 FAILED: Invariants failed after optimization.")
    return None


AGENT_GATES: dict[str, GateCheck] = {
    "codex-designer": validate_gate_0,
    "threat-modeler": validate_gate_0,
    "architect": validate_gate_0,
    "test-planner": validate_gate_0,
    "opus-design-reviewer": validate_gate_1,
    "sc-implementer": validate_gate_2,
    "security-auditor": validate_gate_3,
    "perf-optimizer": validate_gate_4,
}

# sc-code-reviewer output is checked by the review validator
AGENTS = frozenset(AGENT_GATES) | {"sc-code-reviewer"}


def validate_for_agent(agent: str, paths: ProjectPaths, pipeline: PipelineConfig) -> GateOutcome:
    check: Optional[GateCheck] = AGENT_GATES.get(agent)
    if check is None:
        return None
    return check(paths, pipeline.smart_contract_secure)


def is_strict(pipeline: PipelineConfig) -> bool:
    return pipeline.smart_contract_secure.is_strict
