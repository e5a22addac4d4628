"""Policy loader.

Reads a Binary-Authorization-style YAML document, then applies environment
overrides:

    name: projects/<project>/policy
    gate:
      threshold: CRITICAL                 # WARDEN_THRESHOLD
    defaultAdmissionRule:
      requireAttestationsBy:
      - projects/<project>/attestors/vulnerability-attestor
      enforcementMode: ENFORCED_BLOCK_AND_AUDIT_LOG
      evaluationMode: REQUIRE_ATTESTATION

A flat form (``threshold``, ``required_attestors``, ``evaluation_mode``,
``enforcement_mode``) is accepted as well.
"""
from __future__ import annotations

import os
from typing import Any, Dict

import yaml

from .model import EnforcementMode, EvaluationMode, Policy
from ..config import POLICY_FILE
from ..errors import PipelineConfigError
from ..scan.model import parse_severity


def _attestor_name(entry: str) -> str:
    # projects/p/attestors/name -> name
    return entry.rstrip("/").rsplit("/", 1)[-1]


def policy_from_dict(data: Dict[str, Any]) -> Policy:
    rule = data.get("defaultAdmissionRule") or {}
    gate = data.get("gate") or {}
    threshold_raw = os.getenv("WARDEN_THRESHOLD") or gate.get("threshold") or data.get("threshold") or "CRITICAL"
    threshold = parse_severity(threshold_raw)
    if threshold is None:
        raise PipelineConfigError(f"unknown threshold severity {threshold_raw!r}")
    attestors = rule.get("requireAttestationsBy", data.get("required_attestors", [])) or []
    try:
        evaluation = EvaluationMode(rule.get("evaluationMode", data.get("evaluation_mode", "REQUIRE_ATTESTATION")))
        enforcement = EnforcementMode(rule.get("enforcementMode", data.get("enforcement_mode", "ENFORCED_BLOCK_AND_AUDIT_LOG")))
    except ValueError as e:
        raise PipelineConfigError(str(e)) from e
    if evaluation == EvaluationMode.REQUIRE_ATTESTATION and not attestors:
        raise PipelineConfigError("REQUIRE_ATTESTATION policy names no attestors")
    return Policy(
        threshold_severity=threshold,
        required_attestors=frozenset(_attestor_name(a) for a in attestors),
        evaluation_mode=evaluation,
        enforcement_mode=enforcement,
        name=str(data.get("name", "default")),
    )


def load_policy(path: str | None = None) -> Policy:
    path = path or POLICY_FILE
    if not os.path.exists(path):
        raise PipelineConfigError(f"policy file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise PipelineConfigError(f"policy file {path} must hold a mapping")
    return policy_from_dict(data)
