"""Error taxonomy for pipeline stages and their collaborators.

Collaborators (builder, scanner, signer, stores, deployer) raise these at their
seams; only the orchestrator turns them into run outcomes. ``Blocked`` is not
an error: a gate rejection is an expected, policy-driven outcome and is
modelled as ``warden.pipeline.outcome.Blocked``.
"""
from __future__ import annotations


class WardenError(Exception):
    """Base class. ``reason`` is the short token reported in run outcomes."""

    reason = "Error"

    def __init__(self, message: str = "", *, reason: str | None = None):
        super().__init__(message or self.reason)
        if reason:
            self.reason = reason


class PipelineConfigError(WardenError):
    reason = "InvalidConfig"


class PermissionDenied(WardenError):
    reason = "PermissionDenied"


class BuildError(WardenError):
    reason = "BuildError"


class PushError(WardenError):
    reason = "PushError"


class ScanUnavailable(WardenError):
    """Scanner unreachable or erroring; transient, retried with backoff."""

    reason = "ScanUnavailable"


class ScanPending(WardenError):
    """Scan accepted but results not ready yet; the caller keeps polling."""

    reason = "ScanPending"


class ScanTimeout(WardenError):
    reason = "Timeout"


class SigningError(WardenError):
    """Invalid, disabled or unknown key, or a signing backend that stayed down."""

    reason = "SigningError"


class SigningUnavailable(SigningError):
    """Signing backend unreachable; the attestor retries within its budget."""

    reason = "SigningUnavailable"


class KeyNotFound(SigningError):
    reason = "KeyNotFound"


class AttestationConflict(WardenError):
    reason = "AttestationConflict"


class PromotionError(WardenError):
    reason = "PromotionError"


class PolicyViolation(WardenError):
    """Admission controller denied the artifact."""

    reason = "PolicyViolation"


class DeployError(WardenError):
    reason = "DeployError"


class RunCancelled(WardenError):
    reason = "Cancelled"
