"""Policy and permissions passed explicitly into each pipeline run."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import FrozenSet, Iterable

from ..scan.model import Severity

__all__ = [
    "EvaluationMode",
    "EnforcementMode",
    "Policy",
    "Permissions",
    "PolicyHolder",
]


class EvaluationMode(str, Enum):
    REQUIRE_ATTESTATION = "REQUIRE_ATTESTATION"
    ALWAYS_ALLOW = "ALWAYS_ALLOW"
    ALWAYS_DENY = "ALWAYS_DENY"


class EnforcementMode(str, Enum):
    ENFORCED_BLOCK_AND_AUDIT_LOG = "ENFORCED_BLOCK_AND_AUDIT_LOG"
    DRYRUN_AUDIT_LOG_ONLY = "DRYRUN_AUDIT_LOG_ONLY"


@dataclass(frozen=True)
class Policy:
    threshold_severity: Severity = Severity.CRITICAL
    # attestor names, resolved against the attestor registry at decision time
    required_attestors: FrozenSet[str] = frozenset()
    evaluation_mode: EvaluationMode = EvaluationMode.REQUIRE_ATTESTATION
    enforcement_mode: EnforcementMode = EnforcementMode.ENFORCED_BLOCK_AND_AUDIT_LOG
    name: str = "default"

    def with_threshold(self, threshold: Severity) -> "Policy":
        return replace(self, threshold_severity=threshold)

    def requiring(self, attestors) -> "Policy":
        return replace(self, required_attestors=self.required_attestors | frozenset(attestors))

    def as_dict(self):
        return {
            "name": self.name,
            "threshold_severity": self.threshold_severity.name,
            "required_attestors": sorted(self.required_attestors),
            "evaluation_mode": self.evaluation_mode.value,
            "enforcement_mode": self.enforcement_mode.value,
        }


@dataclass(frozen=True)
class Permissions:
    """Capabilities granted to a run. Each stage requires one (see ``pipeline.stages``)."""

    granted: FrozenSet[str] = field(default_factory=frozenset)
    allow_all: bool = False

    @classmethod
    def all(cls) -> "Permissions":
        return cls(allow_all=True)

    @classmethod
    def of(cls, caps: Iterable[str]) -> "Permissions":
        return cls(granted=frozenset(caps))

    def allows(self, capability: str) -> bool:
        return self.allow_all or capability in self.granted


class PolicyHolder:
    """Current policy for new runs.

    ``snapshot()`` hands out the immutable Policy in force at call time; an
    ``update()`` afterwards swaps the reference for later callers only.
    """

    def __init__(self, policy: Policy | None = None):
        self._policy = policy or Policy()
        self._lock = threading.Lock()
        self.generation = 0

    def snapshot(self) -> Policy:
        with self._lock:
            return self._policy

    def update(self, policy: Policy) -> None:
        with self._lock:
            self._policy = policy
            self.generation += 1
