from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Callable, Literal, Optional, Union

from pydantic import BaseModel, ValidationError

from logger import get_logger

logger = get_logger(__name__)

ErrorType = str


class GateDecision(BaseModel):
    """A content violation surfaced to the orchestrator as a block."""

    decision: Literal["block"] = "block"
    reason: str

    def to_json(self) -> str:
        return json.dumps(self.model_dump())


def block(reason: str) -> GateDecision:
    return GateDecision(reason=reason)


@dataclass(frozen=True)
class InternalError:
    """The validator's own plumbing failed; never surfaced as a block."""

    hook: str
    error_type: ErrorType
    message: str


GateOutcome = Optional[GateDecision]
HookResult = Union[GateDecision, InternalError, None]


def classify_error(exception: BaseException) -> ErrorType:
    if isinstance(exception, ValidationError):
        return "schema_error"
    if isinstance(exception, (json.JSONDecodeError, UnicodeDecodeError)):
        return "parse_error"
    if isinstance(exception, OSError):
        return "io_error"
    return "unknown"


def capture_outcome(hook: str, action: Callable[[], GateOutcome]) -> HookResult:
    try:
        return action()
    except Exception as exc:
        return InternalError(hook=hook, error_type=classify_error(exc), message=f"{type(exc).__name__}: {exc}")


def run_fail_open(hook: str, action: Callable[[], GateOutcome]) -> GateOutcome:
    result = capture_outcome(hook, action)
    if isinstance(result, InternalError):
        logger.error(
            "Hook failed internally; allowing pipeline to proceed",
            extra={
                "context": {
                    "hook": result.hook,
                    "error_type": result.error_type,
                    "error": result.message,
                }
            },
        )
        return None
    return result
