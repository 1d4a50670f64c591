from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from logger import get_logger
from normalize import read_and_normalize_json

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = ".claude-codex.json"
LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}

SectionModel = TypeVar("SectionModel", bound=BaseModel)


class Settings(BaseSettings):
    project_dir: Optional[str] = Field(default=None, validation_alias="CLAUDE_PROJECT_DIR")
    config_file: str = Field(DEFAULT_CONFIG_FILE, validation_alias="AUDIT_GATE_CONFIG_FILE")

    log_level: str = Field("WARNING", validation_alias="LOG_LEVEL")
    log_json: bool = Field(True, validation_alias="LOG_JSON")

    calibration_window_seconds: int = Field(60, validation_alias="CALIBRATION_WINDOW_SECONDS")
    codex_session_ttl_seconds: int = Field(3600, validation_alias="CODEX_SESSION_TTL_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("project_dir")
    @classmethod
    def blank_project_dir_is_unset(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("config_file")
    @classmethod
    def validate_config_file(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("AUDIT_GATE_CONFIG_FILE must not be empty")
        return cleaned

    @field_validator("calibration_window_seconds", "codex_session_ttl_seconds")
    @classmethod
    def validate_positive_ints(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Configuration value must be > 0")
        return value

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in LOG_LEVELS:
            raise ValueError("LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG")
        return normalized

    def resolve_project_dir(self) -> Path:
        if self.project_dir:
            return Path(self.project_dir).expanduser()
        return Path.cwd()


def load_settings() -> Settings:
    return Settings()


@dataclass(frozen=True)
class ProjectPaths:
    """Artifact locations relative to the project root."""

    root: Path
    config_file: str = DEFAULT_CONFIG_FILE

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProjectPaths":
        return cls(root=settings.resolve_project_dir(), config_file=settings.config_file)

    @property
    def task_dir(self) -> Path:
        return self.root / ".task"

    @property
    def docs_dir(self) -> Path:
        return self.root / "docs"

    @property
    def reports_dir(self) -> Path:
        return self.root / "reports"

    @property
    def config_path(self) -> Path:
        return self.root / self.config_file

    def task(self, *parts: str) -> Path:
        return self.task_dir.joinpath(*parts)

    def docs(self, *parts: str) -> Path:
        return self.docs_dir.joinpath(*parts)

    def reports(self, *parts: str) -> Path:
        return self.reports_dir.joinpath(*parts)


class SmartContractSecureConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    enable_invariants: bool = True
    enable_slither: bool = True
    enable_semgrep: bool = False
    fuzz_runs: int = 5000
    gate_strictness: str = "high"

    @property
    def is_strict(self) -> bool:
        return self.gate_strictness == "high"


class AdversarialConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    adversarial_mode: bool = True
    min_attack_hypotheses: int = 5
    min_economic_hypotheses: int = 2
    min_dos_hypotheses: int = 2
    min_refuted_hypotheses: int = 1
    min_false_positives_invalidated: int = 3
    dispute_max_rounds: int = 3


class BlindAuditConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    enable_invariants: bool = True
    require_slither: bool = True
    min_fuzz_runs: int = 5000
    gate_strictness: str = "high"
    blind_enforcement: str = "strict"
    require_regression_tests: bool = True
    adversarial: AdversarialConfig = Field(default_factory=AdversarialConfig)

    @property
    def is_strict(self) -> bool:
        return self.gate_strictness == "high"

    @property
    def is_blind_strict(self) -> bool:
        return self.blind_enforcement == "strict"


class PipelineConfig(BaseModel):
    smart_contract_secure: SmartContractSecureConfig = Field(default_factory=SmartContractSecureConfig)
    blind_audit_sc: BlindAuditConfig = Field(default_factory=BlindAuditConfig)


def _validate_section(raw: Any, model: type[SectionModel], namespace: str) -> SectionModel:
    if not isinstance(raw, dict):
        return model()
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        logger.warning(
            "Ignoring invalid pipeline config section",
            extra={"context": {"namespace": namespace, "errors": exc.error_count()}},
        )
        return model()


def load_pipeline_config(paths: ProjectPaths) -> PipelineConfig:
    raw = read_and_normalize_json(paths.config_path)
    if not isinstance(raw, dict):
        return PipelineConfig()

    blind_raw = raw.get("blind_audit_sc")
    adversarial_raw = None
    if isinstance(blind_raw, dict):
        blind_raw = dict(blind_raw)
        adversarial_raw = blind_raw.pop("adversarial", None)

    blind_audit = _validate_section(blind_raw, BlindAuditConfig, "blind_audit_sc")
    blind_audit.adversarial = _validate_section(
        adversarial_raw, AdversarialConfig, "blind_audit_sc.adversarial"
    )
    return PipelineConfig(
        smart_contract_secure=_validate_section(
            raw.get("smart_contract_secure"), SmartContractSecureConfig, "smart_contract_secure"
        ),
        blind_audit_sc=blind_audit,
    )
