import pytest
from hypothesis import given, strategies as st

from warden.gate.evaluate import Allow, Block, evaluate
from warden.scan.model import Finding, Severity, finding_from_occurrence

DIGEST = "sha256:" + "11" * 32


def f(severity, effective="", cve="CVE-1"):
    return Finding(artifact_digest=DIGEST, cve_id=cve, severity=severity, effective_severity=effective, package="pkg")


def test_no_findings_allows():
    d = evaluate([], Severity.CRITICAL)
    assert isinstance(d, Allow) and d.allowed and d.finding_count == 0


def test_below_threshold_allows():
    d = evaluate([f("HIGH"), f("MEDIUM"), f("LOW")], "CRITICAL")
    assert isinstance(d, Allow)
    assert d.finding_count == 3


def test_threshold_is_inclusive():
    d = evaluate([f("HIGH", cve="CVE-2")], Severity.HIGH)
    assert isinstance(d, Block)
    assert [x.cve_id for x in d.offending] == ["CVE-2"]
    assert "CVE-2" in d.reason


def test_effective_severity_wins():
    assert isinstance(evaluate([f("CRITICAL", effective="LOW")], "CRITICAL"), Allow)
    assert isinstance(evaluate([f("LOW", effective="CRITICAL")], "CRITICAL"), Block)


@pytest.mark.parametrize("label", ["", "SEVERITY_UNSPECIFIED", "bogus"])
def test_unparseable_severity_blocks(label):
    d = evaluate([f(label)], Severity.CRITICAL)
    assert isinstance(d, Block)
    assert len(d.unparseable) == 1 and not d.offending
    assert d.details()[0]["severity"] == (label or "UNKNOWN")


def test_unknown_threshold_rejected():
    with pytest.raises(ValueError):
        evaluate([], "SEVERE")


def test_same_input_same_decision():
    findings = [f("CRITICAL", cve="CVE-9"), f("LOW")]
    assert evaluate(findings, "HIGH") == evaluate(list(findings), Severity.HIGH)


def test_container_analysis_occurrence_shape():
    occ = {
        "noteName": "projects/goog-vulnz/notes/CVE-2023-4863",
        "vulnerability": {
            "severity": "HIGH",
            "effectiveSeverity": "CRITICAL",
            "fixAvailable": True,
            "packageIssue": [{"affectedPackage": "libwebp", "affectedVersion": {"fullName": "1.2.4"}}],
        },
    }
    finding = finding_from_occurrence(DIGEST, occ)
    assert finding.cve_id == "CVE-2023-4863"
    assert finding.package == "libwebp" and finding.package_version == "1.2.4"
    assert finding.level == Severity.CRITICAL


severities = st.sampled_from([s.name for s in Severity])
finding_lists = st.lists(severities.map(f), max_size=12)


@given(finding_lists, st.sampled_from(list(Severity)))
def test_gate_blocks_exactly_when_something_reaches_threshold(findings, threshold):
    d = evaluate(findings, threshold)
    reaches = any(x.level >= threshold for x in findings)
    assert d.allowed is not reaches
    if not d.allowed:
        assert all(x.level >= threshold for x in d.offending)


@given(finding_lists, st.sampled_from(list(Severity)))
def test_gate_is_monotone_in_threshold(findings, threshold):
    # anything blocked at a threshold is also blocked at every lower one
    if not evaluate(findings, threshold).allowed:
        for lower in Severity:
            if lower <= threshold:
                assert not evaluate(findings, lower).allowed
