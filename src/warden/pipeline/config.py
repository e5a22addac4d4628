"""Declarative pipeline definition (a cloudbuild.yaml equivalent).

    substitutions:
      _REGION: us-central1
    options:
      timeout: 1200s        # whole run
      scanTimeout: 300s     # bounded wait for scan results
    steps:
    - id: build
      name: gcr.io/cloud-builders/docker
      args: [build, -t, "${_REGION}-docker.pkg.dev/${PROJECT_ID}/artifact-scanning-repo/sample-image:latest", .]
    - id: create-attestation
      stage: attest            # optional; otherwise inferred from the id
      args: [--artifact-url, ..., --attestor, vulnerability-attestor, --keyversion, projects/...]

Every stage of ``stages.ORDER`` must appear exactly once, in order.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .stages import ORDER, Stage, infer_stage, parse_stage
from ..errors import PipelineConfigError

_VAR_RE = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*)|(?P<escaped>\$))")
_DURATION_RE = re.compile(r"^(?P<n>[0-9]+(?:\.[0-9]+)?)(?P<unit>s|m|h)?$")


@dataclass(frozen=True)
class Step:
    id: str
    stage: Stage
    name: str
    args: tuple = ()
    entrypoint: Optional[str] = None
    wait_for: tuple = ()


@dataclass
class PipelineSpec:
    steps: List[Step]
    substitutions: Dict[str, str] = field(default_factory=dict)
    images: List[str] = field(default_factory=list)
    timeout_sec: Optional[float] = None
    scan_timeout_sec: Optional[float] = None

    def step(self, stage: Stage) -> Step:
        for s in self.steps:
            if s.stage == stage:
                return s
        raise PipelineConfigError(f"pipeline has no {stage.value} step")


def parse_duration(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    m = _DURATION_RE.match(str(value).strip())
    if not m:
        raise PipelineConfigError(f"bad duration {value!r}")
    mult = {"s": 1, None: 1, "m": 60, "h": 3600}[m["unit"]]
    return float(m["n"]) * mult


def substitute(text: str, variables: Mapping[str, str]) -> str:
    def _repl(m: re.Match) -> str:
        if m["escaped"]:
            return "$"
        key = m["braced"] or m["bare"]
        if key not in variables:
            raise PipelineConfigError(f"undefined substitution ${{{key}}}")
        return str(variables[key])
    return _VAR_RE.sub(_repl, text)


def _builtin_substitutions() -> Dict[str, str]:
    out = {}
    for key in ("PROJECT_ID", "PROJECT_NUMBER", "LOCATION", "BUILD_ID"):
        val = os.getenv(key)
        if val:
            out[key] = val
    return out


def pipeline_from_dict(data: Dict[str, Any], extra: Optional[Mapping[str, str]] = None) -> PipelineSpec:
    if not isinstance(data, dict) or not isinstance(data.get("steps"), list):
        raise PipelineConfigError("pipeline must define a list of steps")
    variables = _builtin_substitutions()
    variables.update({str(k): str(v) for k, v in (data.get("substitutions") or {}).items()})
    variables.update(extra or {})

    steps: List[Step] = []
    for i, raw in enumerate(data["steps"]):
        if not isinstance(raw, dict):
            raise PipelineConfigError(f"step #{i} must be a mapping")
        step_id = str(raw.get("id") or f"step-{i}")
        stage = parse_stage(str(raw["stage"])) if raw.get("stage") else infer_stage(step_id)
        if stage is None:
            raise PipelineConfigError(f"cannot tell which stage step {step_id!r} implements; set 'stage:'")
        args = tuple(substitute(str(a), variables) for a in (raw.get("args") or []))
        steps.append(Step(
            id=step_id,
            stage=stage,
            name=substitute(str(raw.get("name", "")), variables),
            args=args,
            entrypoint=raw.get("entrypoint"),
            wait_for=tuple(raw.get("waitFor") or ()),
        ))

    found = [s.stage for s in steps]
    if found != list(ORDER):
        raise PipelineConfigError(
            "steps must be exactly " + " -> ".join(s.value for s in ORDER)
            + ", got " + " -> ".join(s.value for s in found)
        )
    options = data.get("options") or {}
    return PipelineSpec(
        steps=steps,
        substitutions=variables,
        images=[substitute(str(i), variables) for i in (data.get("images") or [])],
        timeout_sec=parse_duration(data.get("timeout", options.get("timeout"))),
        scan_timeout_sec=parse_duration(options.get("scanTimeout")),
    )


def load_pipeline(path: str, extra: Optional[Mapping[str, str]] = None) -> PipelineSpec:
    if not os.path.exists(path):
        raise PipelineConfigError(f"pipeline file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return pipeline_from_dict(data, extra)
