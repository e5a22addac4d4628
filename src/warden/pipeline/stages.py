from __future__ import annotations

from enum import Enum
from typing import Dict, Optional


class Stage(str, Enum):
    BUILD = "Build"
    PUSH = "Push"
    SCAN = "Scan"
    GATE = "Gate"
    ATTEST = "Attest"
    PROMOTE = "Promote"
    DEPLOY = "Deploy"


# Execution order; Gate is the only stage that can end a run early without an error.
ORDER = (Stage.BUILD, Stage.PUSH, Stage.SCAN, Stage.GATE, Stage.ATTEST, Stage.PROMOTE, Stage.DEPLOY)

# Capability a run's Permissions must grant for each stage.
CAPABILITIES: Dict[Stage, str] = {
    Stage.BUILD: "artifacts.build",
    Stage.PUSH: "artifacts.write.scanning",
    Stage.SCAN: "scans.create",
    Stage.GATE: "policy.read",
    Stage.ATTEST: "keys.sign",
    Stage.PROMOTE: "artifacts.write.production",
    Stage.DEPLOY: "services.deploy",
}

# Step-id keywords, checked in this order (so "push-to-prod" is a promotion).
_KEYWORDS = (
    (Stage.DEPLOY, ("deploy",)),
    (Stage.ATTEST, ("attest", "sign")),
    (Stage.PROMOTE, ("promote", "prod")),
    (Stage.GATE, ("gate", "severity", "check")),
    (Stage.SCAN, ("scan",)),
    (Stage.PUSH, ("push",)),
    (Stage.BUILD, ("build",)),
)


def parse_stage(value: str) -> Optional[Stage]:
    v = value.strip().lower()
    for st in Stage:
        if st.value.lower() == v or st.name.lower() == v:
            return st
    return None


def infer_stage(step_id: str) -> Optional[Stage]:
    sid = step_id.lower()
    for stage, words in _KEYWORDS:
        if any(w in sid for w in words):
            return stage
    return None
