from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, List, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, StrictFloat, StrictInt, field_validator, model_validator

from normalize import normalize_severity, normalize_status

Identifier = Union[str, int]
Number = Union[StrictInt, StrictFloat]


class Severity(str, Enum):
    critical = "critical"
    high = "high"
    medium = "medium"
    low = "low"
    info = "info"


class ArtifactStatus(str, Enum):
    approved = "approved"
    needs_changes = "needs_changes"
    needs_clarification = "needs_clarification"
    rejected = "rejected"
    complete = "complete"
    open = "open"
    closed = "closed"
    pending = "pending"


REVIEW_STATUSES = (
    ArtifactStatus.approved,
    ArtifactStatus.needs_changes,
    ArtifactStatus.needs_clarification,
)


class IssueSeverity(str, Enum):
    HIGH = "HIGH"
    MED = "MED"
    LOW = "LOW"


class IssueStatus(str, Enum):
    OPEN = "OPEN"
    FIXED_PENDING_VERIFY = "FIXED_PENDING_VERIFY"
    CLOSED = "CLOSED"


BLOCKING_ISSUE_SEVERITIES = (IssueSeverity.HIGH, IssueSeverity.MED)


def _empty_if_none(value: Any) -> Any:
    return [] if value is None else value


NoneAsEmpty = BeforeValidator(_empty_if_none)


class ArtifactModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class StatusArtifact(ArtifactModel):
    status: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def canonical_status(cls, value: Any) -> Any:
        return normalize_status(value)


# -- findings / invariants / acceptance criteria --


class Finding(ArtifactModel):
    # detectors disagree on shapes ("file" may be a list), so only severity is interpreted
    id: Optional[Any] = None
    file: Optional[Any] = None
    affected: Optional[Any] = None
    line: Optional[Any] = None
    severity: Optional[Any] = None
    title: Optional[Any] = None

    @field_validator("severity", mode="before")
    @classmethod
    def canonical_severity(cls, value: Any) -> Any:
        return normalize_severity(value)

    @property
    def is_high_or_medium(self) -> bool:
        return self.severity in (Severity.critical.value, Severity.high.value, Severity.medium.value)


class Invariant(ArtifactModel):
    id: Optional[Identifier] = None
    description: Optional[Any] = None
    expression: Optional[Any] = None
    category: Optional[Any] = None

    @model_validator(mode="before")
    @classmethod
    def bare_id(cls, value: Any) -> Any:
        # "invariants": ["IC-1", "IS-1"]
        if isinstance(value, (str, int)):
            return {"id": str(value)}
        return value


class InvariantTestMapping(ArtifactModel):
    invariant_id: Optional[str] = None
    test: Optional[Any] = None

    @model_validator(mode="before")
    @classmethod
    def bare_or_aliased_id(cls, value: Any) -> Any:
        if isinstance(value, (str, int)):
            return {"invariant_id": str(value)}
        if isinstance(value, dict) and not value.get("invariant_id"):
            alias = value.get("invariant") or value.get("id")
            if alias is not None:
                return {**value, "invariant_id": str(alias)}
        return value


class AcceptanceCriterion(ArtifactModel):
    id: Optional[Identifier] = None
    description: Optional[str] = None
    measurable: Optional[bool] = None


class UserStory(ArtifactModel):
    acceptance_criteria: Annotated[List[AcceptanceCriterion], NoneAsEmpty] = Field(default_factory=list)

    @property
    def acceptance_criteria_ids(self) -> list[Identifier]:
        return [criterion.id for criterion in self.acceptance_criteria if criterion.id is not None]


# -- stage artifacts --


def _mapping_entries(value: Any) -> Any:
    # {"IC-1": "test/Vault.t.sol::invariant_conservation"} is as common as a list of rows
    if isinstance(value, dict):
        return [{"invariant_id": str(key), "test": test} for key, test in value.items()]
    return value


class SpecArtifact(StatusArtifact):
    unmapped_invariants: Annotated[List[Any], NoneAsEmpty] = Field(default_factory=list)
    invariants: Annotated[List[Invariant], NoneAsEmpty] = Field(default_factory=list)
    test_mapping: Annotated[Optional[List[InvariantTestMapping]], BeforeValidator(_mapping_entries)] = None

    def uncovered_invariants(self) -> list[str]:
        """Declared-but-unmapped ids, plus whatever the agent already listed as unmapped."""
        uncovered = [str(item) for item in self.unmapped_invariants]
        if self.test_mapping is not None:
            mapped = {entry.invariant_id for entry in self.test_mapping}
            for invariant in self.invariants:
                invariant_id = None if invariant.id is None else str(invariant.id)
                if invariant_id and invariant_id not in mapped and invariant_id not in uncovered:
                    uncovered.append(invariant_id)
        return uncovered


class StaticAnalysisArtifact(StatusArtifact):
    unsuppressed_high_findings: Annotated[List[Any], NoneAsEmpty] = Field(default_factory=list)

    def unsuppressed_ids(self) -> list[str]:
        ids = []
        for entry in self.unsuppressed_high_findings:
            if isinstance(entry, dict):
                ids.append(str(entry.get("id") or entry.get("detector")))
            else:
                ids.append(str(entry))
        return ids


class PerfVerification(ArtifactModel):
    all_tests_pass: Optional[bool] = None
    all_invariants_pass: Optional[bool] = None


class PerfResultArtifact(StatusArtifact):
    verification: Optional[PerfVerification] = None


def _object_entries(value: Any) -> Any:
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    return value


class FindingsArtifact(StatusArtifact):
    findings: Annotated[List[Finding], NoneAsEmpty, BeforeValidator(_object_entries)] = Field(default_factory=list)


class RedTeamIssuesArtifact(StatusArtifact):
    ready_for_final_gate: Optional[bool] = None


class RedTeamIssue(BaseModel):
    id: str
    severity: Optional[IssueSeverity] = None
    status: Optional[IssueStatus] = None
    title: str = "Unknown"
    regression_test: Optional[str] = None
    test_verified: bool = False
    problems: List[str] = Field(default_factory=list)

    @property
    def blocks_final_gate(self) -> bool:
        return self.severity in BLOCKING_ISSUE_SEVERITIES

    @property
    def has_regression_test(self) -> bool:
        if not self.regression_test:
            return False
        return self.regression_test != "-" and self.regression_test.lower() != "pending"

    def describe(self) -> str:
        severity = self.severity.value if self.severity else "UNKNOWN"
        status = self.status.value if self.status else "UNKNOWN"
        return f"{self.id} ({severity}): {self.title} - {status}"


# -- reviews --


class CoverageMapping(ArtifactModel):
    ac_id: Optional[Identifier] = None


class RequirementsCoverage(ArtifactModel):
    mapping: Annotated[List[CoverageMapping], NoneAsEmpty] = Field(default_factory=list)
    missing: Annotated[List[Any], NoneAsEmpty] = Field(default_factory=list)


class VerificationDetail(ArtifactModel):
    ac_id: Optional[Identifier] = None
    status: Optional[str] = None


class AcceptanceCriteriaVerification(ArtifactModel):
    details: Annotated[List[VerificationDetail], NoneAsEmpty] = Field(default_factory=list)


class ReviewArtifact(StatusArtifact):
    requirements_coverage: Optional[RequirementsCoverage] = None
    acceptance_criteria_verification: Optional[AcceptanceCriteriaVerification] = None
    findings: Optional[Any] = None
    exploits_confirmed: Optional[Any] = None
    confirmed_exploits: Optional[Any] = None


# -- calibration sprints --


class DetectCoverage(StatusArtifact):
    high_med_candidates: Optional[Number] = None
    validated_findings: Optional[List[Any]] = None
    coverage_notes: Optional[str] = None

    def validated_ids(self) -> list[Any]:
        return [item.get("id") for item in self.validated_findings or [] if isinstance(item, dict)]


class PatchEntry(ArtifactModel):
    finding_id: Optional[Identifier] = None
    id: Optional[Identifier] = None

    @property
    def target_id(self) -> Optional[Identifier]:
        return self.finding_id or self.id


class PatchClosure(StatusArtifact):
    patches: Optional[List[PatchEntry]] = None


class ReplayEntry(PatchEntry):
    verdict: Optional[str] = None
    status: Optional[str] = None


class ExploitReplay(StatusArtifact):
    replays: Optional[List[ReplayEntry]] = None


class DiscoveryScoreboard(StatusArtifact):
    entrypoints_total: Optional[Number] = None
    entrypoints_reviewed: Optional[Number] = None
    high_med_candidates: Optional[Any] = None
    validated_high_med: Optional[Any] = None
    hint_level: Optional[str] = None


# -- adversarial stages --


class HypothesisSummary(ArtifactModel):
    total: Optional[Number] = None
    economic_mev: Optional[Number] = None
    dos_gas_grief: Optional[Number] = None


class AttackHypothesis(ArtifactModel):
    id: Optional[Identifier] = None
    preconditions: Optional[Union[List[Any], str]] = None
    attack_steps: Optional[Union[List[Any], str]] = None
    invariant_violated: Optional[Any] = None
    demonstration_test: Optional[Any] = None


class AttackPlan(StatusArtifact):
    hypotheses: Optional[HypothesisSummary] = None
    attack_hypotheses: Optional[List[AttackHypothesis]] = None
    top_5_priority: Optional[List[Any]] = None
    blindness_verified: Optional[Any] = None


class Refutation(ArtifactModel):
    id: Optional[Identifier] = None
    why_it_fails: Optional[Any] = None
    guard_code_ref: Optional[Any] = None


class InvalidatedFalsePositive(ArtifactModel):
    id: Optional[Identifier] = None
    evidence: Optional[Any] = None
    code_ref: Optional[Any] = None


class DeepExploitReview(StatusArtifact):
    refuted_hypotheses: Optional[List[Refutation]] = None
    false_positives_invalidated: Optional[List[InvalidatedFalsePositive]] = None
    blindness_verified: Optional[Any] = None
    opus_isolation_verified: Optional[Any] = None


class DisputeDetail(ArtifactModel):
    id: Optional[Identifier] = None
    verdict: Optional[str] = None
    red_team_issue: Optional[Any] = None
    reproduction_artifact: Optional[dict[str, Any]] = None
    refutation_evidence: Optional[Any] = None
    justification: Optional[Any] = None
    add_test_task: Optional[Any] = None
    opus_argument: Optional[Any] = None
    codex_argument: Optional[Any] = None

    @property
    def has_reproduction(self) -> bool:
        artifact = self.reproduction_artifact or {}
        return bool(artifact.get("test_file") or artifact.get("code"))


class DisputeCounts(ArtifactModel):
    confirmed_high: Optional[Number] = None
    confirmed_med: Optional[Number] = None
    unclear: Optional[Number] = None


class DisputeResolution(StatusArtifact):
    dispute_details: Optional[List[DisputeDetail]] = None
    disputes: Optional[DisputeCounts] = None
    red_team_issues_created: Optional[List[Any]] = None
    rerun_required: Optional[Any] = None
    unclear_tasks_created: Optional[List[Any]] = None
    rerun_round: Optional[Number] = None
    blindness_verified: Optional[Any] = None
