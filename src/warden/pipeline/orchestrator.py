"""Pipeline executor.

A run walks ``spec.steps`` (Build, Push, Scan, Gate, Attest, Promote, Deploy)
one stage at a time through a handler table. The only branch is at Gate: a
Block ends the run as ``Blocked`` before Attest is reachable, so nothing is
ever attested or promoted without an Allow from the same run. Any
collaborator error ends the run as ``Failed(stage, reason)``.

Cancellation is checked between stages and while waiting on scan results.
The policy is snapshotted once, at Gate, and that snapshot is what Deploy's
admission check uses.
"""
from __future__ import annotations

import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .builder import Builder
from .config import PipelineSpec, Step
from .deployer import Deployer, Deployment
from .outcome import Blocked, Failed, RunResult, StageRecord, Succeeded
from .settings import RunSettings
from .stages import CAPABILITIES, Stage
from ..admission.controller import AdmissionController
from ..artifacts.model import SCANNING, Artifact, parse_reference
from ..artifacts.store import ArtifactStore
from ..attest.attestor import Attestor
from ..attest.model import Attestation
from ..attest.signer import KeyRef, Signer
from ..attest.store import AttestationStore
from ..config import ATTESTOR_NAME
from ..errors import (
    PermissionDenied,
    PipelineConfigError,
    PolicyViolation,
    PromotionError,
    PushError,
    RunCancelled,
    ScanPending,
    ScanTimeout,
    ScanUnavailable,
    SigningError,
    WardenError,
)
from ..gate.evaluate import Decision, evaluate
from ..obs.prom import GATE_DECISIONS, SCAN_POLLS, observe_run, observe_stage
from ..policy.model import Permissions, Policy, PolicyHolder
from ..receipts.ledger import RunLedger
from ..scan.model import Finding
from ..scan.scanner import Scanner
from ..utils.logging import get_logger

log = get_logger()


def _flag(args: Sequence[str], *names: str) -> Optional[str]:
    # value following the first of ``names`` (also accepts --name=value)
    for i, a in enumerate(args):
        for n in names:
            if a == n and i + 1 < len(args):
                return args[i + 1]
            if a.startswith(n + "="):
                return a.split("=", 1)[1]
    return None


def _parse_ref(step: Step, ref: str):
    try:
        return parse_reference(ref)
    except ValueError as e:
        raise PipelineConfigError(f"step {step.id}: {e}") from e


def _positionals(args: Sequence[str]) -> List[str]:
    out = []
    skip = False
    for a in args:
        if skip:
            skip = False
            continue
        if a.startswith("-"):
            skip = "=" not in a
            continue
        out.append(a)
    return out


@dataclass
class RunContext:
    run_id: str
    spec: PipelineSpec
    permissions: Permissions
    cancel: threading.Event
    deadline: Optional[float] = None
    artifact: Optional[Artifact] = None
    scan_id: Optional[str] = None
    findings: List[Finding] = field(default_factory=list)
    policy: Optional[Policy] = None
    decision: Optional[Decision] = None
    attestation: Optional[Attestation] = None
    promoted: Optional[Artifact] = None
    deployment: Optional[Deployment] = None


class Orchestrator:
    def __init__(
        self,
        *,
        builder: Builder,
        artifacts: ArtifactStore,
        scanner: Scanner,
        signer: Signer,
        attestations: AttestationStore,
        admission: AdmissionController,
        deployer: Deployer,
        policies: PolicyHolder,
        settings: Optional[RunSettings] = None,
        ledger: Optional[RunLedger] = None,
        workdir: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.builder = builder
        self.artifacts = artifacts
        self.scanner = scanner
        self.signer = signer
        self.attestations = attestations
        self.admission = admission
        self.deployer = deployer
        self.policies = policies
        self.settings = settings or RunSettings()
        self.ledger = ledger
        self.workdir = workdir or os.getcwd()
        self._sleep = sleep
        self._clock = clock
        self._handlers: Dict[Stage, Callable[[RunContext, Step], None]] = {
            Stage.BUILD: self._build,
            Stage.PUSH: self._push,
            Stage.SCAN: self._scan,
            Stage.GATE: self._gate,
            Stage.ATTEST: self._attest,
            Stage.PROMOTE: self._promote,
            Stage.DEPLOY: self._deploy,
        }

    # ------------------------------------------------------------------ executor

    def run(
        self,
        spec: PipelineSpec,
        *,
        permissions: Optional[Permissions] = None,
        cancel: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
    ) -> RunResult:
        ctx = RunContext(
            run_id=run_id or str(uuid.uuid4()),
            spec=spec,
            permissions=permissions or Permissions.all(),
            cancel=cancel or threading.Event(),
        )
        run_timeout = spec.timeout_sec or self.settings.run_timeout_sec
        if run_timeout:
            ctx.deadline = self._clock() + run_timeout
        records: List[StageRecord] = []
        outcome = None
        log.info(f"run {ctx.run_id} started ({len(spec.steps)} steps)")

        for step in spec.steps:
            if ctx.cancel.is_set():
                outcome = Failed(step.stage, RunCancelled.reason, "run cancelled before stage")
                break
            if ctx.deadline is not None and self._clock() >= ctx.deadline:
                outcome = Failed(step.stage, ScanTimeout.reason, f"run exceeded {run_timeout:.0f}s")
                break
            cap = CAPABILITIES[step.stage]
            if not ctx.permissions.allows(cap):
                outcome = Failed(step.stage, PermissionDenied.reason, f"missing capability {cap}")
                records.append(StageRecord(step.stage, step.id, "failed", 0.0, outcome.detail))
                break

            log.info(f"run {ctx.run_id} stage {step.stage.value} ({step.id})")
            t0 = self._clock()
            try:
                self._handlers[step.stage](ctx, step)
            except WardenError as e:
                elapsed = self._clock() - t0
                outcome = Failed(step.stage, e.reason, str(e))
                records.append(StageRecord(step.stage, step.id, "failed", elapsed, str(e)))
                log.error(f"run {ctx.run_id} {outcome.describe()}")
                break
            except Exception as e:
                elapsed = self._clock() - t0
                log.exception(f"run {ctx.run_id} stage {step.stage.value} crashed")
                outcome = Failed(step.stage, "InternalError", repr(e))
                records.append(StageRecord(step.stage, step.id, "failed", elapsed, repr(e)))
                break
            finally:
                observe_stage(step.stage.value, self._clock() - t0)

            elapsed = self._clock() - t0
            if step.stage == Stage.GATE and not ctx.decision.allowed:
                outcome = Blocked(ctx.decision)
                records.append(StageRecord(step.stage, step.id, "blocked", elapsed, ctx.decision.reason))
                log.warning(f"run {ctx.run_id} blocked: {ctx.decision.reason}")
                break
            records.append(StageRecord(step.stage, step.id, "ok", elapsed))
        else:
            outcome = Succeeded()

        result = RunResult(
            run_id=ctx.run_id,
            outcome=outcome,
            stages=records,
            artifact=ctx.artifact,
            promoted=ctx.promoted,
            attestation=ctx.attestation,
            deployment=ctx.deployment,
            policy=ctx.policy.as_dict() if ctx.policy else None,
        )
        observe_run(outcome.kind, getattr(outcome, "reason", "") if isinstance(outcome, Failed) else "")
        log.info(f"run {ctx.run_id} finished: {outcome.describe()}")
        if self.ledger is not None:
            self.ledger.append(result.as_dict())
        return result

    def run_many(self, specs: Sequence[PipelineSpec], *, permissions: Optional[Permissions] = None,
                 max_workers: int = 4) -> List[RunResult]:
        """Run independent pipelines concurrently; results come back in input order."""
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = [pool.submit(self.run, s, permissions=permissions) for s in specs]
            return [f.result() for f in futures]

    # ------------------------------------------------------------------ helpers

    def _check_cancel(self, ctx: RunContext):
        if ctx.cancel.is_set():
            raise RunCancelled("run cancelled")

    def _backoff(self, attempt: int) -> float:
        return self.settings.backoff_base_sec * (2 ** (attempt - 1))

    # ------------------------------------------------------------------ stages

    def _build(self, ctx: RunContext, step: Step):
        image = _flag(step.args, "-t", "--tag") or (ctx.spec.images[0] if ctx.spec.images else None)
        if not image:
            raise PipelineConfigError(f"step {step.id}: no image tag (-t) and no images: entry")
        positionals = [p for p in _positionals(step.args) if p != "build"]
        context_dir = positionals[-1] if positionals else "."
        if not os.path.isabs(context_dir):
            context_dir = os.path.join(self.workdir, context_dir)
        ctx.artifact = self.builder.build(context_dir, image)

    def _push(self, ctx: RunContext, step: Step):
        positionals = [p for p in _positionals(step.args) if p != "push"]
        if positionals:
            repo, tag, _ = _parse_ref(step, positionals[-1])
            if (repo, tag or "latest") != (ctx.artifact.repository, ctx.artifact.tag):
                raise PushError(f"step {step.id} pushes {positionals[-1]} but the build produced {ctx.artifact.tagged}")
        pushed = self.builder.push(ctx.artifact)
        ctx.artifact = self.artifacts.put(pushed, SCANNING)

    def _scan(self, ctx: RunContext, step: Step):
        timeout = ctx.spec.scan_timeout_sec or self.settings.scan_timeout_sec
        deadline = self._clock() + timeout
        max_attempts = max(1, self.settings.scan_max_attempts)
        ref = ctx.artifact.reference

        for attempt in range(1, max_attempts + 1):
            self._check_cancel(ctx)
            try:
                ctx.scan_id = self.scanner.scan(ref)
                break
            except ScanUnavailable as e:
                if attempt == max_attempts:
                    raise
                delay = self._backoff(attempt)
                log.warning(f"scan request {attempt}/{max_attempts} failed ({e}); retrying in {delay:.2f}s")
                self._sleep(delay)

        failures = 0
        while True:
            self._check_cancel(ctx)
            try:
                ctx.findings = list(self.scanner.list_findings(ctx.scan_id))
                SCAN_POLLS.labels(result="ready").inc()
                log.info(f"scan {ctx.scan_id}: {len(ctx.findings)} finding(s)")
                return
            except ScanPending:
                SCAN_POLLS.labels(result="pending").inc()
                delay = self.settings.scan_poll_interval_sec
            except ScanUnavailable as e:
                SCAN_POLLS.labels(result="unavailable").inc()
                failures += 1
                if failures >= max_attempts:
                    raise
                delay = self._backoff(failures)
                log.warning(f"scan poll failed ({e}); retry {failures}/{max_attempts} in {delay:.2f}s")
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ScanTimeout(f"scan {ctx.scan_id} not ready after {timeout:.0f}s")
            self._sleep(min(delay, remaining))

    def _gate(self, ctx: RunContext, step: Step):
        ctx.policy = self.policies.snapshot()
        threshold = ctx.policy.threshold_severity
        ctx.decision = evaluate(ctx.findings, threshold)
        label = "allow" if ctx.decision.allowed else "block"
        GATE_DECISIONS.labels(decision=label, threshold=threshold.name).inc()
        log.info(f"gate {label} threshold={threshold.name} findings={len(ctx.findings)}")

    def _attest(self, ctx: RunContext, step: Step):
        name = _flag(step.args, "--attestor") or ATTESTOR_NAME
        key_version = _flag(step.args, "--keyversion")
        if key_version and key_version.isdigit():
            parts = [_flag(step.args, f"--keyversion-{p}") for p in ("project", "location", "keyring", "key")]
            if not all(parts):
                raise PipelineConfigError(f"step {step.id}: bare --keyversion needs --keyversion-project/location/keyring/key")
            key_version = KeyRef(*parts, int(key_version)).name
        if not key_version:
            raise PipelineConfigError(f"step {step.id}: --keyversion is required")
        url = _flag(step.args, "--artifact-url")
        if url:
            repo, tag, _ = _parse_ref(step, url)
            if repo != ctx.artifact.repository:
                raise PipelineConfigError(f"step {step.id}: --artifact-url {url} is not the built artifact")
        if ctx.policy and name not in ctx.policy.required_attestors:
            log.warning(f"attestor {name} is not required by policy {ctx.policy.name}")
        try:
            key_ref = KeyRef.parse(key_version)
        except SigningError as e:
            raise SigningError(f"{e.reason}: {e}") from e
        attestor = Attestor(
            name,
            self.signer,
            self.attestations,
            max_attempts=self.settings.sign_max_attempts,
            backoff_base=self.settings.backoff_base_sec,
            sleep=self._sleep,
        )
        ctx.attestation = attestor.attest(ctx.artifact, key_ref)

    def _promote(self, ctx: RunContext, step: Step):
        if ctx.attestation is None:
            raise PromotionError("refusing to promote an artifact without an attestation")
        target = _flag(step.args, "--to")
        if not target and step.args:
            # last word of the last arg; covers the shell form "docker tag SRC DST && docker push DST"
            target = step.args[-1].split()[-1]
        if not target:
            raise PipelineConfigError(f"step {step.id}: no promotion target")
        repo, tag, _ = _parse_ref(step, target)
        wanted = ctx.artifact.retag(repo, tag)
        self.builder.copy(ctx.artifact, wanted)
        ctx.promoted = self.artifacts.promote(ctx.artifact, repo, tag)

    def _deploy(self, ctx: RunContext, step: Step):
        positionals = _positionals(step.args)
        service = positionals[positionals.index("deploy") + 1] if "deploy" in positionals[:-1] else None
        service = service or _flag(step.args, "--service")
        if not service:
            raise PipelineConfigError(f"step {step.id}: no service name")
        region = _flag(step.args, "--region") or "us-central1"
        image = _flag(step.args, "--image")
        if image:
            repo, _, _ = _parse_ref(step, image)
            if repo != ctx.promoted.repository:
                raise PipelineConfigError(f"step {step.id}: --image {image} is not the promoted artifact")
        decision = self.admission.authorize(ctx.promoted.digest, ctx.policy)
        if not decision.allowed:
            raise PolicyViolation(decision.reason)
        ctx.deployment = self.deployer.deploy(ctx.promoted, service, region)
