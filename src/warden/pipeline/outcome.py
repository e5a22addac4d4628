"""Terminal outcomes of a pipeline run.

``Blocked`` is kept apart from ``Failed``: it is the gate doing its job, and
carries the offending findings so the caller can act on them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .stages import Stage
from ..gate.evaluate import Block

EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_BLOCKED = 2


@dataclass(frozen=True)
class Succeeded:
    kind = "Succeeded"
    exit_code = EXIT_SUCCEEDED

    def describe(self) -> str:
        return "Succeeded"


@dataclass(frozen=True)
class Failed:
    stage: Stage
    reason: str
    detail: str = ""
    kind = "Failed"
    exit_code = EXIT_FAILED

    def describe(self) -> str:
        base = f"Failed({self.stage.value}, {self.reason})"
        return f"{base}: {self.detail}" if self.detail else base


@dataclass(frozen=True)
class Blocked:
    decision: Block
    kind = "Blocked"
    exit_code = EXIT_BLOCKED

    @property
    def reason(self) -> str:
        return self.decision.reason

    def describe(self) -> str:
        return f"Blocked: {self.decision.reason}"


Outcome = Union[Succeeded, Failed, Blocked]


@dataclass
class StageRecord:
    stage: Stage
    step_id: str
    status: str  # ok | failed | blocked | skipped
    seconds: float = 0.0
    detail: str = ""


@dataclass
class RunResult:
    run_id: str
    outcome: Outcome
    stages: List[StageRecord] = field(default_factory=list)
    artifact: Optional[Any] = None
    promoted: Optional[Any] = None
    attestation: Optional[Any] = None
    deployment: Optional[Any] = None
    policy: Optional[Dict[str, Any]] = None

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "run_id": self.run_id,
            "outcome": self.outcome.kind,
            "summary": self.outcome.describe(),
            "stages": [
                {"stage": s.stage.value, "step": s.step_id, "status": s.status,
                 "seconds": round(s.seconds, 3), "detail": s.detail}
                for s in self.stages
            ],
            "policy": self.policy,
        }
        if isinstance(self.outcome, Failed):
            out["failed_stage"] = self.outcome.stage.value
            out["reason"] = self.outcome.reason
        if isinstance(self.outcome, Blocked):
            out["reason"] = "Blocked"
            out["findings"] = self.outcome.decision.details()
        if self.artifact is not None:
            out["artifact"] = self.artifact.reference
        if self.promoted is not None:
            out["promoted"] = self.promoted.reference
        if self.attestation is not None:
            out["attestation"] = {"attestor": self.attestation.attestor, "key_version": self.attestation.key_version}
        if self.deployment is not None:
            out["deployment"] = self.deployment.as_dict()
        return out
