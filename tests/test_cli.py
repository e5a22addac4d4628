import json

import yaml

from conftest import ATTESTOR, KEY, finding, pipeline_dict

from warden.cli import main


def _setup(tmp_path, monkeypatch, findings):
    monkeypatch.chdir(tmp_path)
    app = tmp_path / "app"
    app.mkdir()
    (app / "Dockerfile").write_text("FROM scratch\n")
    (tmp_path / "pipeline.yaml").write_text(yaml.safe_dump(pipeline_dict()))
    (tmp_path / "findings.json").write_text(json.dumps(findings))
    (tmp_path / "policy.yaml").write_text(yaml.safe_dump({
        "defaultAdmissionRule": {"requireAttestationsBy": [f"projects/demo/attestors/{ATTESTOR}"]},
    }))
    key = KEY.rsplit("/cryptoKeyVersions/", 1)[0]
    assert main(["keys", "create", key, "--algorithm", "ec-sign-p256-sha256"]) == 0
    assert main(["attestors", "add-key", ATTESTOR, "--keyversion", KEY]) == 0


def test_run_end_to_end(tmp_path, monkeypatch, capsys):
    _setup(tmp_path, monkeypatch, [finding("HIGH")])
    capsys.readouterr()
    rc = main(["run", "pipeline.yaml", "--findings", "findings.json", "--policy", "policy.yaml", "--workdir", "app"])
    text = capsys.readouterr().out
    out = json.loads(text[text.index("{\n"):])
    assert rc == 0
    assert out["outcome"] == "Succeeded"
    assert out["deployment"]["service"] == "auth-service"
    assert main(["ledger", "verify"]) == 0


def test_run_blocked_exit_code(tmp_path, monkeypatch, capsys):
    _setup(tmp_path, monkeypatch, [finding("CRITICAL")])
    rc = main(["run", "pipeline.yaml", "--findings", "findings.json", "--policy", "policy.yaml", "--workdir", "app"])
    assert rc == 2
    digest = "sha256:" + "00" * 32
    assert main(["authorize", "--digest", digest, "--policy", "policy.yaml"]) == 2


def test_gate_command(tmp_path, capsys):
    report = tmp_path / "report.yaml"
    report.write_text(yaml.safe_dump([finding("HIGH", cve="CVE-7")]))
    assert main(["gate", "--findings", str(report), "--threshold", "CRITICAL"]) == 0
    assert main(["gate", "--findings", str(report), "--threshold", "HIGH"]) == 2
    out = capsys.readouterr().out
    assert "CVE-7" in out


def test_keys_list_and_disable(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    key = KEY.rsplit("/cryptoKeyVersions/", 1)[0]
    assert main(["keys", "create", key, "--algorithm", "ed25519"]) == 0
    assert main(["keys", "disable", KEY]) == 0
    capsys.readouterr()
    assert main(["keys", "list", key]) == 0
    assert capsys.readouterr().out.strip() == f"{KEY}\tDISABLED"
    assert main(["keys", "disable", KEY, "--enable"]) == 0
    capsys.readouterr()
    main(["keys", "list", key])
    assert capsys.readouterr().out.strip() == f"{KEY}\tENABLED"
    # creating the same key again is reported, not raised
    assert main(["keys", "create", key]) == 1


def test_gate_unknown_threshold_is_an_error(tmp_path, capsys):
    report = tmp_path / "report.json"
    report.write_text(json.dumps([finding("HIGH")]))
    assert main(["gate", "--findings", str(report), "--threshold", "SEVERE"]) == 1
    assert "error: unknown severity threshold 'SEVERE'" in capsys.readouterr().err


def test_attest_bad_artifact_url_is_an_error(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    assert main(["attest", "--artifact-url", "bad@ref", "--keyversion", KEY]) == 1
    assert "error: bad --artifact-url 'bad@ref'" in capsys.readouterr().err
    assert main(["attest", "--artifact-url", "us-docker.pkg.dev/demo/app:v1", "--keyversion", KEY]) == 1
    assert "pinned by digest" in capsys.readouterr().err
