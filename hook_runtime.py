"""
SubagentStop hook plumbing shared by every validator.

The orchestrator pipes ``{"agent_id": ..., "agent_transcript_path": ...}``
on stdin. The finishing agent's type is recovered from its transcript, the
matching validator runs, and a block decision is printed to stdout as JSON.
Nothing is printed when the agent may proceed. The exit code is always 0;
any failure inside the hook lets the pipeline proceed.
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, TextIO

from pydantic import BaseModel, ConfigDict, ValidationError

import adversarial_validator
import blind_audit_gates
import bundle_validator
import redteam_closure
import review_validator
import secure_pipeline_gates
from artifacts import read_text
from config import PipelineConfig, ProjectPaths, Settings, load_pipeline_config, load_settings
from error_handler import GateOutcome, run_fail_open
from logger import get_logger

logger = get_logger(__name__)

PLUGIN_PREFIX = "claude-codex:"
SUBAGENT_TYPE_RE = re.compile(r"""subagent_type['":\s]+['"]?(claude-codex:[^'"}\s,]+)""")

AgentValidator = Callable[[str, ProjectPaths, PipelineConfig, Settings], GateOutcome]


class HookInput(BaseModel):
    model_config = ConfigDict(extra="allow")

    agent_id: Optional[str] = None
    agent_transcript_path: Optional[str] = None


def parse_hook_input(stdin_text: str) -> Optional[HookInput]:
    try:
        return HookInput.model_validate_json(stdin_text)
    except ValidationError:
        return None


def agent_type_from_transcript(transcript_path: str) -> Optional[str]:
    content = read_text(Path(transcript_path).expanduser())
    if not content:
        return None
    match = SUBAGENT_TYPE_RE.search(content)
    return match.group(1) if match else None


def short_agent_name(agent_type: str) -> str:
    if agent_type.startswith(PLUGIN_PREFIX):
        return agent_type[len(PLUGIN_PREFIX) :]
    return agent_type


def _plain(validate: Callable[[str, ProjectPaths, PipelineConfig], GateOutcome]) -> AgentValidator:
    def run(agent: str, paths: ProjectPaths, pipeline: PipelineConfig, settings: Settings) -> GateOutcome:
        return validate(agent, paths, pipeline)

    return run


def _review(agent: str, paths: ProjectPaths, pipeline: PipelineConfig, settings: Settings) -> GateOutcome:
    return review_validator.validate_for_agent(
        agent,
        paths,
        pipeline,
        calibration_window_seconds=settings.calibration_window_seconds,
    )


@dataclass(frozen=True)
class HookSpec:
    name: str
    agents: frozenset[str]
    validate: AgentValidator
    is_strict: Callable[[PipelineConfig], bool]


HOOKS: dict[str, HookSpec] = {
    spec.name: spec
    for spec in (
        HookSpec(
            "secure-gates",
            secure_pipeline_gates.AGENTS,
            _plain(secure_pipeline_gates.validate_for_agent),
            secure_pipeline_gates.is_strict,
        ),
        HookSpec(
            "blind-audit-gates",
            blind_audit_gates.AGENTS,
            _plain(blind_audit_gates.validate_for_agent),
            blind_audit_gates.is_strict,
        ),
        HookSpec(
            "redteam-closure",
            redteam_closure.AGENTS,
            _plain(redteam_closure.validate_for_agent),
            redteam_closure.is_strict,
        ),
        HookSpec(
            "bundle",
            bundle_validator.AGENTS,
            _plain(bundle_validator.validate_for_agent),
            bundle_validator.is_strict,
        ),
        HookSpec("review", review_validator.AGENTS, _review, review_validator.is_strict),
        HookSpec(
            "adversarial",
            adversarial_validator.AGENTS,
            _plain(adversarial_validator.validate_for_agent),
            adversarial_validator.is_strict,
        ),
    )
}


def evaluate_hook(spec: HookSpec, hook_input: HookInput, settings: Settings, stderr: TextIO) -> GateOutcome:
    """The decision to print, or None. Warn-only violations go to ``stderr`` here."""
    if not hook_input.agent_transcript_path:
        return None
    agent_type = agent_type_from_transcript(hook_input.agent_transcript_path)
    if agent_type is None:
        return None
    agent = short_agent_name(agent_type)
    if agent not in spec.agents:
        return None

    paths = ProjectPaths.from_settings(settings)
    pipeline = load_pipeline_config(paths)
    outcome = spec.validate(agent, paths, pipeline, settings)
    if outcome is None:
        return None

    logger.info(
        "Gate violation",
        extra={"context": {"hook": spec.name, "agent": agent, "agent_id": hook_input.agent_id}},
    )
    if spec.is_strict(pipeline):
        return outcome
    print(f"WARNING: {outcome.reason}", file=stderr)
    return None


def run_hook(
    name: str,
    stdin_text: str,
    settings: Optional[Settings] = None,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
) -> int:
    out = stdout if stdout is not None else sys.stdout
    err = stderr if stderr is not None else sys.stderr

    spec = HOOKS.get(name)
    if spec is None:
        logger.error("Unknown hook", extra={"context": {"hook": name}})
        return 0

    hook_input = parse_hook_input(stdin_text)
    if hook_input is None:
        return 0

    def action() -> GateOutcome:
        return evaluate_hook(spec, hook_input, settings or load_settings(), err)

    outcome = run_fail_open(name, action)
    if outcome is not None:
        print(outcome.to_json(), file=out)
    return 0
