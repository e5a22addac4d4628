"""Severity gate: a pure decision over scan findings.

    evaluate(findings, threshold) -> Allow | Block

Block when any finding's effective severity is at or above ``threshold``, or
when a severity cannot be parsed (fail closed). No I/O, no clock, no globals:
the same findings and threshold always give the same decision.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple, Union

from ..scan.model import Finding, Severity, parse_severity


@dataclass(frozen=True)
class Allow:
    threshold: Severity
    finding_count: int = 0

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class Block:
    threshold: Severity
    reason: str
    offending: Tuple[Finding, ...] = ()
    unparseable: Tuple[Finding, ...] = ()

    @property
    def allowed(self) -> bool:
        return False

    def details(self) -> list[dict]:
        rows = []
        for f in self.offending + self.unparseable:
            rows.append({
                "cve_id": f.cve_id,
                "package": f.package,
                "package_version": f.package_version,
                "severity": f.effective_severity or f.severity or "UNKNOWN",
                "fix_available": f.fix_available,
            })
        return rows


Decision = Union[Allow, Block]


def evaluate(findings: Iterable[Finding], threshold: Severity | str) -> Decision:
    level = parse_severity(threshold)
    if level is None:
        raise ValueError(f"unknown threshold severity: {threshold!r}")
    findings = tuple(findings)
    offending = []
    unparseable = []
    for f in findings:
        sev = f.level
        if sev is None:
            unparseable.append(f)
        elif sev >= level:
            offending.append(f)
    if not offending and not unparseable:
        return Allow(threshold=level, finding_count=len(findings))
    parts = []
    if offending:
        parts.append(f"{len(offending)} finding(s) at or above {level.name}: " + ", ".join(f.summary() for f in offending))
    if unparseable:
        parts.append(f"{len(unparseable)} finding(s) with unknown severity: " + ", ".join(f.summary() for f in unparseable))
    return Block(threshold=level, reason="; ".join(parts), offending=tuple(offending), unparseable=tuple(unparseable))
