from __future__ import annotations

from enum import IntEnum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class Severity(IntEnum):
    MINIMAL = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    CRITICAL = 5


def parse_severity(value: Any) -> Optional[Severity]:
    """Map a scanner severity label onto ``Severity``; ``None`` when unrecognised.

    Callers must treat ``None`` as blocking. ``SEVERITY_UNSPECIFIED`` and empty
    strings are unrecognised on purpose.
    """
    if isinstance(value, Severity):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Severity[value.strip().upper()]
    except KeyError:
        return None


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    artifact_digest: str
    cve_id: str
    severity: str
    package: str
    effective_severity: str = ""
    package_version: Optional[str] = None
    fix_available: Optional[bool] = None

    @property
    def level(self) -> Optional[Severity]:
        # effective severity (distro-adjusted) wins when the scanner reports one
        return parse_severity(self.effective_severity or self.severity)

    def summary(self) -> str:
        sev = self.effective_severity or self.severity or "UNKNOWN"
        pkg = f"{self.package}@{self.package_version}" if self.package_version else self.package
        return f"{self.cve_id} {sev} in {pkg}"


def finding_from_occurrence(digest: str, occ: Dict[str, Any]) -> Finding:
    """Build a Finding from a scanner vulnerability occurrence.

    Accepts the flat shape (``cve``/``severity``/``package``) and the nested
    Container Analysis shape (``vulnerability.effectiveSeverity``,
    ``vulnerability.packageIssue[0].affectedPackage``).
    """
    vuln = occ.get("vulnerability") or {}
    issues = vuln.get("packageIssue") or [{}]
    issue = issues[0] if issues else {}
    cve = occ.get("cve_id") or occ.get("cve") or vuln.get("shortDescription") or occ.get("noteName", "").rsplit("/", 1)[-1]
    return Finding(
        artifact_digest=occ.get("artifact_digest") or digest,
        cve_id=cve or "UNKNOWN",
        severity=str(occ.get("severity") or vuln.get("severity") or ""),
        effective_severity=str(occ.get("effective_severity") or vuln.get("effectiveSeverity") or ""),
        package=occ.get("package") or issue.get("affectedPackage") or "unknown",
        package_version=occ.get("package_version") or (issue.get("affectedVersion") or {}).get("fullName"),
        fix_available=occ.get("fix_available", vuln.get("fixAvailable")),
    )
