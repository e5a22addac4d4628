import pytest

from warden.admission.attestors import AttestorRegistry
from warden.admission.controller import LocalAdmissionController
from warden.artifacts.store import ArtifactStore
from warden.attest.keyring import LocalKeyring
from warden.attest.signer import KeyRef
from warden.attest.store import AttestationStore
from warden.pipeline.builder import LocalBuilder
from warden.pipeline.config import pipeline_from_dict
from warden.pipeline.deployer import LocalDeployer
from warden.pipeline.orchestrator import Orchestrator
from warden.pipeline.settings import RunSettings
from warden.policy.model import Policy, PolicyHolder
from warden.receipts.ledger import RunLedger
from warden.scan.scanner import StaticScanner

ATTESTOR = "vulnerability-attestor"
KEY = "projects/demo/locations/global/keyRings/binauthz-keys/cryptoKeys/lab-key/cryptoKeyVersions/1"
SCAN_IMAGE = "us-central1-docker.pkg.dev/demo/artifact-scanning-repo/sample-image:latest"
PROD_IMAGE = "us-central1-docker.pkg.dev/demo/artifact-prod-repo/sample-image:latest"
DIGEST = "sha256:" + "ab" * 32


def pipeline_dict(**options):
    data = {
        "substitutions": {"_IMAGE": SCAN_IMAGE, "_PROD_IMAGE": PROD_IMAGE, "_KEY": KEY},
        "steps": [
            {"id": "build", "args": ["build", "-t", "${_IMAGE}", "."]},
            {"id": "push", "args": ["push", "${_IMAGE}"]},
            {"id": "scan", "args": ["artifacts", "docker", "images", "scan", "${_IMAGE}"]},
            {"id": "severity check"},
            {"id": "create-attestation",
             "args": ["--artifact-url", "${_IMAGE}", "--attestor", ATTESTOR, "--keyversion", "${_KEY}"]},
            {"id": "push-to-prod", "entrypoint": "bash",
             "args": ["-c", "docker tag ${_IMAGE} ${_PROD_IMAGE} && docker push ${_PROD_IMAGE}"]},
            {"id": "deploy", "args": ["run", "deploy", "auth-service", "--image", "${_PROD_IMAGE}",
                                      "--region", "us-central1"]},
        ],
    }
    if options:
        data["options"] = options
    return data


def finding(severity, cve="CVE-2024-0001", package="openssl"):
    return {"cve": cve, "severity": severity, "package": package}


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def workdir(tmp_path):
    d = tmp_path / "app"
    d.mkdir()
    (d / "Dockerfile").write_text("FROM python:3.12-slim\nCOPY . .\n")
    (d / "main.py").write_text("print('hello')\n")
    return d


@pytest.fixture
def key_ref():
    return KeyRef.parse(KEY)


@pytest.fixture
def keyring(tmp_path, key_ref):
    kr = LocalKeyring(str(tmp_path / "keys"))
    kr.create_key(key_ref)
    return kr


@pytest.fixture
def registry(tmp_path, keyring, key_ref):
    reg = AttestorRegistry(path=str(tmp_path / "attestors.yaml"))
    reg.create(ATTESTOR, note="projects/demo/notes/vulnerability_note")
    reg.add_key_version(ATTESTOR, keyring, key_ref)
    return reg


@pytest.fixture
def attestations(tmp_path):
    return AttestationStore(str(tmp_path / "attestations.db"))


@pytest.fixture
def policy():
    return Policy(required_attestors=frozenset({ATTESTOR}))


@pytest.fixture
def spec():
    return pipeline_from_dict(pipeline_dict())


@pytest.fixture
def make_orchestrator(tmp_path, keyring, registry, attestations, policy, clock, workdir):
    def _make(report=None, *, pending_polls=0, scanner=None, signer=None, admission=None,
              policies=None, settings=None):
        return Orchestrator(
            builder=LocalBuilder(),
            artifacts=ArtifactStore(str(tmp_path / "artifacts.db")),
            scanner=scanner or StaticScanner(report={"*": report or []}, pending_polls=pending_polls),
            signer=signer or keyring,
            attestations=attestations,
            admission=admission or LocalAdmissionController(registry, attestations),
            deployer=LocalDeployer(),
            policies=policies or PolicyHolder(policy),
            settings=settings or RunSettings(scan_timeout_sec=30, scan_poll_interval_sec=1,
                                             scan_max_attempts=3, sign_max_attempts=3, backoff_base_sec=0.5),
            ledger=RunLedger(str(tmp_path / "runs.jsonl")),
            workdir=str(workdir),
            sleep=clock.sleep,
            clock=clock,
        )
    return _make
