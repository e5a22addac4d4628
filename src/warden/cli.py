from __future__ import annotations

import argparse
import json
import sys
from typing import Dict, List

from . import config
from .admission.app import create_app, run_app
from .admission.attestors import AttestorRegistry
from .admission.controller import HttpAdmissionClient, LocalAdmissionController
from .artifacts.model import Artifact, parse_reference
from .artifacts.store import ArtifactStore
from .attest.attestor import Attestor
from .attest.keyring import LocalKeyring
from .attest.signer import KeyRef, KmsSigner
from .attest.store import AttestationStore
from .crypto.sign import RSA_2048
from .errors import PipelineConfigError, WardenError
from .gate.evaluate import evaluate
from .pipeline.builder import DockerBuilder, LocalBuilder
from .pipeline.config import load_pipeline
from .pipeline.deployer import GcloudRunDeployer, LocalDeployer
from .pipeline.orchestrator import Orchestrator
from .pipeline.outcome import EXIT_BLOCKED, EXIT_FAILED, EXIT_SUCCEEDED
from .pipeline.settings import load_settings
from .policy.loader import load_policy
from .policy.model import PolicyHolder
from .receipts.ledger import RunLedger
from .scan.model import parse_severity
from .scan.scanner import HttpScanner, StaticScanner
from .utils.logging import get_logger

log = get_logger()


def _signer():
    if config.KMS_URL:
        return KmsSigner(config.KMS_URL)
    return LocalKeyring(config.KEYRING_DIR)


def _scanner(findings: str | None):
    if config.SCANNER_URL:
        return HttpScanner(config.SCANNER_URL)
    if findings:
        return StaticScanner.from_file(findings)
    return StaticScanner()


def _admission(store: AttestationStore):
    if config.ADMISSION_URL:
        return HttpAdmissionClient(config.ADMISSION_URL)
    return LocalAdmissionController(AttestorRegistry.load(), store)


def _substitutions(pairs: List[str]) -> Dict[str, str]:
    out = {}
    for p in pairs:
        k, sep, v = p.partition("=")
        if not sep:
            raise PipelineConfigError(f"--sub expects KEY=VALUE, got {p!r}")
        out[k] = v
    return out


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def cmd_run(args: argparse.Namespace) -> int:
    spec = load_pipeline(args.pipeline, _substitutions(args.sub))
    attestations = AttestationStore()
    orch = Orchestrator(
        builder=DockerBuilder() if args.builder == "docker" else LocalBuilder(),
        artifacts=ArtifactStore(),
        scanner=_scanner(args.findings),
        signer=_signer(),
        attestations=attestations,
        admission=_admission(attestations),
        deployer=GcloudRunDeployer() if args.deployer == "gcloud" else LocalDeployer(),
        policies=PolicyHolder(load_policy(args.policy)),
        settings=load_settings(args.settings),
        ledger=RunLedger(),
        workdir=args.workdir,
    )
    result = orch.run(spec)
    _print(result.as_dict())
    return result.exit_code


def cmd_gate(args: argparse.Namespace) -> int:
    scanner = StaticScanner.from_file(args.findings)
    findings = scanner.list_findings(scanner.scan(f"scan@{args.digest}"))
    if args.threshold:
        threshold = parse_severity(args.threshold)
        if threshold is None:
            raise PipelineConfigError(f"unknown severity threshold {args.threshold!r}")
    else:
        threshold = load_policy(args.policy).threshold_severity
    decision = evaluate(findings, threshold)
    if decision.allowed:
        _print({"decision": "allow", "findings": decision.finding_count})
        return EXIT_SUCCEEDED
    _print({"decision": "block", "reason": decision.reason, "findings": decision.details()})
    return EXIT_BLOCKED


def cmd_attest(args: argparse.Namespace) -> int:
    try:
        repo, tag, digest = parse_reference(args.artifact_url)
        digest = args.digest or digest
        if not digest:
            raise PipelineConfigError("the artifact must be pinned by digest (repo@sha256:... or --digest)")
        artifact = Artifact(repository=repo, tag=tag or "latest", digest=digest)
    except ValueError as e:
        raise PipelineConfigError(f"bad --artifact-url {args.artifact_url!r}: {e}") from e
    attestor = Attestor(args.attestor, _signer(), AttestationStore())
    att = attestor.attest(artifact, KeyRef.parse(args.keyversion))
    _print(att.model_dump())
    return EXIT_SUCCEEDED


def cmd_authorize(args: argparse.Namespace) -> int:
    store = AttestationStore()
    decision = _admission(store).authorize(args.digest, load_policy(args.policy))
    _print(decision.as_dict())
    return EXIT_SUCCEEDED if decision.allowed else EXIT_BLOCKED


def cmd_keys_create(args: argparse.Namespace) -> int:
    ref = LocalKeyring(config.KEYRING_DIR).create_key(KeyRef.parse(args.key + "/cryptoKeyVersions/1"), args.algorithm)
    print(ref.name)
    return EXIT_SUCCEEDED


def cmd_keys_disable(args: argparse.Namespace) -> int:
    keyring = LocalKeyring(config.KEYRING_DIR)
    ref = KeyRef.parse(args.keyversion)
    if args.destroy:
        keyring.destroy(ref)
    elif args.enable:
        keyring.enable(ref)
    else:
        keyring.disable(ref)
    return EXIT_SUCCEEDED


def cmd_keys_list(args: argparse.Namespace) -> int:
    keyring = LocalKeyring(config.KEYRING_DIR)
    for ref, state in keyring.versions(KeyRef.parse(args.key + "/cryptoKeyVersions/1")):
        print(f"{ref.name}\t{state}")
    return EXIT_SUCCEEDED


def cmd_attestors_add_key(args: argparse.Namespace) -> int:
    registry = AttestorRegistry.load()
    registry.create(args.name, args.note or "")
    pk = registry.add_key_version(args.name, _signer(), KeyRef.parse(args.keyversion))
    path = registry.save()
    print(f"{args.name}: trusted {pk.id} ({pk.algorithm}) -> {path}")
    return EXIT_SUCCEEDED


def cmd_ledger_verify(args: argparse.Namespace) -> int:
    ok = RunLedger(args.path).verify()
    print("ok" if ok else "ledger chain broken")
    return EXIT_SUCCEEDED if ok else EXIT_FAILED


def cmd_serve(args: argparse.Namespace) -> int:
    policies = PolicyHolder(load_policy(args.policy))
    controller = LocalAdmissionController(AttestorRegistry.load(), AttestationStore())
    run_app(create_app(controller, policies), host=args.host, port=args.port)
    return EXIT_SUCCEEDED


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser("warden")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="run a build pipeline")
    p_run.add_argument("pipeline")
    p_run.add_argument("--findings", help="canned scan report (JSON/YAML) when no scanner URL is set")
    p_run.add_argument("--policy")
    p_run.add_argument("--settings")
    p_run.add_argument("--workdir")
    p_run.add_argument("--builder", choices=["local", "docker"], default="local")
    p_run.add_argument("--deployer", choices=["local", "gcloud"], default="local")
    p_run.add_argument("--sub", action="append", default=[], metavar="KEY=VALUE")
    p_run.set_defaults(func=cmd_run)

    p_gate = sub.add_parser("gate", help="evaluate a scan report against a threshold")
    p_gate.add_argument("--findings", required=True)
    p_gate.add_argument("--digest", default="sha256:" + "0" * 64)
    p_gate.add_argument("--threshold")
    p_gate.add_argument("--policy")
    p_gate.set_defaults(func=cmd_gate)

    p_att = sub.add_parser("attest", help="sign an attestation for an artifact")
    p_att.add_argument("--artifact-url", dest="artifact_url", required=True)
    p_att.add_argument("--digest")
    p_att.add_argument("--attestor", default=config.ATTESTOR_NAME)
    p_att.add_argument("--keyversion", required=True)
    p_att.set_defaults(func=cmd_attest)

    p_auth = sub.add_parser("authorize", help="ask the admission controller about a digest")
    p_auth.add_argument("--digest", required=True)
    p_auth.add_argument("--policy")
    p_auth.set_defaults(func=cmd_authorize)

    p_keys = sub.add_parser("keys", help="manage the local keyring")
    ksub = p_keys.add_subparsers(dest="keys_cmd", required=True)
    k_create = ksub.add_parser("create")
    k_create.add_argument("key", help="projects/<p>/locations/<l>/keyRings/<r>/cryptoKeys/<k>")
    k_create.add_argument("--algorithm", default=RSA_2048)
    k_create.set_defaults(func=cmd_keys_create)
    k_disable = ksub.add_parser("disable")
    k_disable.add_argument("keyversion")
    mode = k_disable.add_mutually_exclusive_group()
    mode.add_argument("--destroy", action="store_true")
    mode.add_argument("--enable", action="store_true", help="re-enable a disabled version")
    k_disable.set_defaults(func=cmd_keys_disable)
    k_list = ksub.add_parser("list")
    k_list.add_argument("key")
    k_list.set_defaults(func=cmd_keys_list)

    p_attestors = sub.add_parser("attestors", help="manage trusted attestor keys")
    asub = p_attestors.add_subparsers(dest="attestors_cmd", required=True)
    a_add = asub.add_parser("add-key")
    a_add.add_argument("name")
    a_add.add_argument("--keyversion", required=True)
    a_add.add_argument("--note")
    a_add.set_defaults(func=cmd_attestors_add_key)

    p_ledger = sub.add_parser("ledger", help="check the run ledger hash chain")
    p_ledger.add_argument("verify", choices=["verify"])
    p_ledger.add_argument("--path")
    p_ledger.set_defaults(func=cmd_ledger_verify)

    p_serve = sub.add_parser("serve", help="serve the admission controller over HTTP")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8080)
    p_serve.add_argument("--policy")
    p_serve.set_defaults(func=cmd_serve)

    args = p.parse_args(argv)
    try:
        return args.func(args)
    except WardenError as e:
        log.error(f"{args.cmd}: {e.reason}: {e}")
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
