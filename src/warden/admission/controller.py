"""Admission decisions at deploy time.

    authorize(artifact_digest, policy) -> Allow | Deny

``LocalAdmissionController`` enforces a Binary-Authorization-style rule: every
attestor the policy requires must have a stored attestation for the digest,
signed by a key version the attestor registry trusts, whose payload names
that digest. An artifact without such attestations is denied whatever its
scan history was.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Tuple, runtime_checkable

import httpx

from .attestors import AttestorRegistry
from ..attest.model import SIGNATURE_TYPE, Attestation
from ..attest.store import AttestationStore
from ..config import HTTP_TIMEOUT_SEC
from ..crypto.sign import verify_digest
from ..errors import DeployError
from ..obs.prom import ADMISSION_DECISIONS
from ..policy.model import EnforcementMode, EvaluationMode, Policy
from ..utils.logging import get_logger

log = get_logger()


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    reason: str = ""
    dry_run: bool = False
    violations: Tuple[str, ...] = field(default_factory=tuple)

    def as_dict(self):
        return {"allowed": self.allowed, "reason": self.reason, "dry_run": self.dry_run,
                "violations": list(self.violations)}


@runtime_checkable
class AdmissionController(Protocol):
    def authorize(self, artifact_digest: str, policy: Policy) -> AdmissionDecision: ...


class LocalAdmissionController:
    def __init__(self, registry: AttestorRegistry, store: AttestationStore):
        self.registry = registry
        self.store = store

    def _check_attestation(self, digest: str, name: str) -> Optional[str]:
        """Return a violation message, or None when ``name`` vouches for ``digest``."""
        spec = self.registry.get(name)
        if spec is None:
            return f"attestor {name} is not registered"
        att: Optional[Attestation] = self.store.get(digest, name)
        if att is None:
            return f"no attestation by {name}"
        key = spec.key(att.key_version)
        if key is None:
            return f"attestation by {name} signed with untrusted key {att.key_version}"
        try:
            payload_bytes = base64.b64decode(att.payload_b64, validate=True)
            payload = json.loads(payload_bytes)
            signature = base64.b64decode(att.signature_b64, validate=True)
        except (binascii.Error, ValueError):
            return f"attestation by {name} is malformed"
        critical = payload.get("critical") if isinstance(payload, dict) else None
        if not isinstance(critical, dict) or critical.get("type") != SIGNATURE_TYPE:
            return f"attestation by {name} has an unexpected payload type"
        if (critical.get("image") or {}).get("docker-manifest-digest") != digest:
            return f"attestation by {name} names a different digest"
        if not verify_digest(key.algorithm, key.pem, signature, hashlib.sha256(payload_bytes).digest()):
            return f"attestation by {name} has an invalid signature"
        return None

    def authorize(self, artifact_digest: str, policy: Policy) -> AdmissionDecision:
        violations: List[str] = []
        if policy.evaluation_mode == EvaluationMode.ALWAYS_DENY:
            violations.append("policy denies all images")
        elif policy.evaluation_mode == EvaluationMode.REQUIRE_ATTESTATION:
            if not policy.required_attestors:
                violations.append("policy requires attestation but names no attestors")
            for name in sorted(policy.required_attestors):
                v = self._check_attestation(artifact_digest, name)
                if v:
                    violations.append(v)

        enforcement = policy.enforcement_mode.value
        if not violations:
            ADMISSION_DECISIONS.labels(decision="allow", enforcement=enforcement).inc()
            log.info(f"admission allow digest={artifact_digest} policy={policy.name}")
            return AdmissionDecision(allowed=True, reason="attestations verified")
        reason = "; ".join(violations)
        if policy.enforcement_mode == EnforcementMode.DRYRUN_AUDIT_LOG_ONLY:
            ADMISSION_DECISIONS.labels(decision="dryrun_deny", enforcement=enforcement).inc()
            log.warning(f"admission dry-run deny (allowed) digest={artifact_digest}: {reason}")
            return AdmissionDecision(allowed=True, reason=reason, dry_run=True, violations=tuple(violations))
        ADMISSION_DECISIONS.labels(decision="deny", enforcement=enforcement).inc()
        log.warning(f"admission deny digest={artifact_digest}: {reason}")
        return AdmissionDecision(allowed=False, reason=reason, violations=tuple(violations))


class HttpAdmissionClient:
    """Client for the admission service (``warden.admission.app``).

    The service decides with its own configured policy. The caller's snapshot
    is sent along and its required attestors are added to the server's, so a
    run can tighten admission but never relax it. The threshold is not
    re-checked server side; a differing one is logged.
    """

    def __init__(self, base_url: str, *, timeout: float = HTTP_TIMEOUT_SEC,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def authorize(self, artifact_digest: str, policy: Policy) -> AdmissionDecision:
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                r = client.post(f"{self.base_url}/authorize",
                                json={"digest": artifact_digest, "requested_policy": policy.name,
                                      "policy": policy.as_dict()})
                r.raise_for_status()
                body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DeployError(f"admission controller unreachable: {e}", reason="AdmissionUnavailable") from e
        enforced = body.get("policy") or {}
        if enforced.get("threshold_severity", policy.threshold_severity.name) != policy.threshold_severity.name:
            log.warning(f"admission: service enforces threshold {enforced['threshold_severity']}, "
                        f"run gated at {policy.threshold_severity.name}")
        return AdmissionDecision(
            allowed=bool(body.get("allowed")),
            reason=body.get("reason", ""),
            dry_run=bool(body.get("dry_run")),
            violations=tuple(body.get("violations") or ()),
        )
