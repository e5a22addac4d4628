import json

import pytest

from conftest import DIGEST

from warden.artifacts.model import PRODUCTION, SCANNING, Artifact, parse_reference
from warden.artifacts.store import ArtifactStore
from warden.crypto.jcs import jcs_canonicalize
from warden.errors import PipelineConfigError, PromotionError, PushError
from warden.policy.loader import load_policy, policy_from_dict
from warden.policy.model import EvaluationMode, Permissions, PolicyHolder
from warden.receipts.ledger import RunLedger
from warden.scan.model import Severity

REPO = "us-central1-docker.pkg.dev/demo/artifact-scanning-repo/sample-image"
PROD = "us-central1-docker.pkg.dev/demo/artifact-prod-repo/sample-image"


def test_parse_reference():
    assert parse_reference(f"{REPO}:v1@{DIGEST}") == (REPO, "v1", DIGEST)
    assert parse_reference("localhost:5000/app") == ("localhost:5000/app", None, None)
    with pytest.raises(ValueError):
        parse_reference("app@sha256:nothex")


def test_promote_requires_staged_digest(tmp_path):
    store = ArtifactStore(str(tmp_path / "a.db"))
    art = Artifact(repository=REPO, digest=DIGEST)
    with pytest.raises(PromotionError):
        store.promote(art, PROD)
    store.put(art, SCANNING)
    promoted = store.promote(art, PROD)
    assert promoted.digest == DIGEST and promoted.repository == PROD
    assert store.resolve(PROD, "latest", PRODUCTION) == promoted
    assert store.list(SCANNING) == [art]


def test_tags_move_digests_do_not(tmp_path):
    store = ArtifactStore(str(tmp_path / "a.db"))
    store.put(Artifact(repository=REPO, digest=DIGEST))
    newer = Artifact(repository=REPO, digest="sha256:" + "12" * 32)
    store.put(newer)
    assert store.resolve(REPO, "latest").digest == newer.digest
    assert store.contains(DIGEST, SCANNING)
    # the retagged digest is still staged and can be promoted
    assert store.promote(Artifact(repository=REPO, digest=DIGEST), PROD).digest == DIGEST
    with pytest.raises(PushError):
        store.put(newer, "staging")


def test_canonical_json():
    out = jcs_canonicalize({"b": [1, {"z": True, "a": "\u00e9"}], "a": 0.25})
    assert out == '{"a":0.25,"b":[1,{"a":"\u00e9","z":true}]}'.encode("utf-8")


def test_ledger_chain_and_tamper(tmp_path):
    ledger = RunLedger(str(tmp_path / "runs.jsonl"))
    a = ledger.append({"run_id": "1", "outcome": "Succeeded"})
    b = ledger.append({"run_id": "2", "outcome": "Blocked"})
    assert a["prev_receipt_hash_b64"] is None
    assert b["prev_receipt_hash_b64"] == a["leaf_hash_b64"]
    assert ledger.verify()

    lines = (tmp_path / "runs.jsonl").read_text().splitlines()
    rec = json.loads(lines[0])
    rec["body"]["outcome"] = "Blocked"
    lines[0] = json.dumps(rec)
    (tmp_path / "runs.jsonl").write_text("\n".join(lines) + "\n")
    assert not ledger.verify()


def test_policy_from_binauthz_yaml(monkeypatch):
    monkeypatch.delenv("WARDEN_THRESHOLD", raising=False)
    policy = policy_from_dict({
        "defaultAdmissionRule": {
            "requireAttestationsBy": ["projects/p/attestors/vulnerability-attestor"],
            "enforcementMode": "ENFORCED_BLOCK_AND_AUDIT_LOG",
            "evaluationMode": "REQUIRE_ATTESTATION",
        },
        "gate": {"threshold": "high"},
    })
    assert policy.required_attestors == frozenset({"vulnerability-attestor"})
    assert policy.threshold_severity == Severity.HIGH
    assert policy.evaluation_mode == EvaluationMode.REQUIRE_ATTESTATION


def test_policy_threshold_env_override(monkeypatch):
    monkeypatch.setenv("WARDEN_THRESHOLD", "MEDIUM")
    policy = policy_from_dict({"required_attestors": ["a"]})
    assert policy.threshold_severity == Severity.MEDIUM


def test_policy_errors(tmp_path, monkeypatch):
    monkeypatch.delenv("WARDEN_THRESHOLD", raising=False)
    with pytest.raises(PipelineConfigError):
        policy_from_dict({"evaluation_mode": "REQUIRE_ATTESTATION"})
    with pytest.raises(PipelineConfigError):
        policy_from_dict({"required_attestors": ["a"], "threshold": "SEVERE"})
    with pytest.raises(PipelineConfigError):
        load_policy(str(tmp_path / "missing.yaml"))


def test_policy_holder_snapshot_is_stable(monkeypatch):
    monkeypatch.delenv("WARDEN_THRESHOLD", raising=False)
    holder = PolicyHolder(policy_from_dict({"required_attestors": ["a"]}))
    snap = holder.snapshot()
    holder.update(snap.with_threshold(Severity.LOW))
    assert snap.threshold_severity == Severity.CRITICAL
    assert holder.snapshot().threshold_severity == Severity.LOW
    assert holder.generation == 1


def test_permissions():
    assert Permissions.all().allows("keys.sign")
    assert not Permissions.of(["policy.read"]).allows("keys.sign")
