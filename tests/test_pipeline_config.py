from pathlib import Path

import pytest

from conftest import pipeline_dict

from warden.errors import PipelineConfigError
from warden.pipeline.config import load_pipeline, parse_duration, pipeline_from_dict, substitute
from warden.pipeline.stages import ORDER, Stage, infer_stage


def test_substitute_forms():
    vars = {"A": "x", "_REGION": "us"}
    assert substitute("${_REGION}-docker/$A", vars) == "us-docker/x"
    assert substitute("cost $$5", vars) == "cost $5"


def test_undefined_substitution_is_an_error():
    with pytest.raises(PipelineConfigError):
        substitute("${NOPE}", {})


@pytest.mark.parametrize("step_id,stage", [
    ("build", Stage.BUILD),
    ("push", Stage.PUSH),
    ("scan", Stage.SCAN),
    ("severity check", Stage.GATE),
    ("create-attestation", Stage.ATTEST),
    ("push-to-prod", Stage.PROMOTE),
    ("deploy-to-cloud-run", Stage.DEPLOY),
])
def test_infer_stage(step_id, stage):
    assert infer_stage(step_id) == stage


def test_durations():
    assert parse_duration("90s") == 90
    assert parse_duration("5m") == 300
    assert parse_duration(12) == 12
    assert parse_duration(None) is None
    with pytest.raises(PipelineConfigError):
        parse_duration("soon")


def test_pipeline_from_dict():
    spec = pipeline_from_dict(pipeline_dict(scanTimeout="2m"), extra={"_KEY": "override"})
    assert [s.stage for s in spec.steps] == list(ORDER)
    assert spec.scan_timeout_sec == 120
    assert spec.step(Stage.ATTEST).args[-1] == "override"


def test_steps_out_of_order_rejected():
    data = pipeline_dict()
    data["steps"][3], data["steps"][4] = data["steps"][4], data["steps"][3]
    with pytest.raises(PipelineConfigError):
        pipeline_from_dict(data)


def test_missing_stage_rejected():
    data = pipeline_dict()
    del data["steps"][2]
    with pytest.raises(PipelineConfigError):
        pipeline_from_dict(data)


def test_sample_pipeline_file(monkeypatch):
    monkeypatch.setenv("PROJECT_ID", "demo")
    spec = load_pipeline(str(Path(__file__).resolve().parent.parent / "config" / "pipeline.yaml"))
    assert spec.images == ["us-central1-docker.pkg.dev/demo/artifact-scanning-repo/sample-image:latest"]
    assert spec.timeout_sec == 1200
    assert "artifact-prod-repo" in spec.step(Stage.PROMOTE).args[-1]
