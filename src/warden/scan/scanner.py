"""Vulnerability scanner interface and backends.

The scanner is an external collaborator: ``scan(ref)`` starts an analysis and
returns an id, ``list_findings(scan_id)`` returns the findings once ready.
``ScanPending`` means "poll again", ``ScanUnavailable`` means the backend is
down or erroring; polling and retry budgets live in the orchestrator.
"""
from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx
import yaml

from .model import Finding, finding_from_occurrence
from ..artifacts.model import parse_reference
from ..config import HTTP_TIMEOUT_SEC
from ..errors import ScanPending, ScanUnavailable


@runtime_checkable
class Scanner(Protocol):
    def scan(self, artifact_ref: str) -> str: ...
    def list_findings(self, scan_id: str) -> List[Finding]: ...


def _digest_of(artifact_ref: str) -> str:
    _, _, digest = parse_reference(artifact_ref)
    if not digest:
        raise ScanUnavailable(f"scan requires a digest-pinned reference, got {artifact_ref}")
    return digest


@dataclass
class StaticScanner:
    """Scanner backed by a canned report, for local runs and tests.

    ``report`` maps a digest (or ``"*"`` for any artifact) to a list of
    occurrences. ``pending_polls`` makes each scan report ``ScanPending`` that
    many times before results become available.
    """

    report: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    pending_polls: int = 0
    _scans: Dict[str, Dict[str, Any]] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @classmethod
    def from_file(cls, path: str, pending_polls: int = 0) -> "StaticScanner":
        text = Path(path).read_text(encoding="utf-8")
        data = yaml.safe_load(text) if path.endswith((".yml", ".yaml")) else json.loads(text)
        data = data or {}
        if isinstance(data, list):
            data = {"*": data}
        return cls(report=data.get("findings", data), pending_polls=pending_polls)

    def scan(self, artifact_ref: str) -> str:
        digest = _digest_of(artifact_ref)
        scan_id = str(uuid.uuid4())
        with self._lock:
            self._scans[scan_id] = {"digest": digest, "polls": 0}
        return scan_id

    def list_findings(self, scan_id: str) -> List[Finding]:
        with self._lock:
            entry = self._scans.get(scan_id)
            if entry is None:
                raise ScanUnavailable(f"unknown scan id {scan_id}")
            entry["polls"] += 1
            if entry["polls"] <= self.pending_polls:
                raise ScanPending(scan_id)
            del self._scans[scan_id]
        digest = entry["digest"]
        occurrences = self.report.get(digest, self.report.get("*", []))
        return [finding_from_occurrence(digest, o) for o in occurrences]


class HttpScanner:
    """On-demand scanning over HTTP.

    POST {base}/scans {"resourceUri": ref}           -> {"scan_id": ...}
    GET  {base}/scans/{id}/vulnerabilities?pageToken -> 202 while running,
         200 {"vulnerabilities": [...], "nextPageToken": "..."} when done.
    """

    def __init__(self, base_url: str, *, timeout: float = HTTP_TIMEOUT_SEC, token: Optional[str] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._timeout = timeout
        self._transport = transport
        self._digests: Dict[str, str] = {}

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._timeout, headers=self._headers, transport=self._transport)

    def scan(self, artifact_ref: str) -> str:
        digest = _digest_of(artifact_ref)
        try:
            with self._client() as client:
                r = client.post(f"{self.base_url}/scans", json={"resourceUri": artifact_ref})
                r.raise_for_status()
                body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ScanUnavailable(f"scan request failed: {e}") from e
        scan_id = body.get("scan_id") or body.get("name", "").rsplit("/", 1)[-1]
        if not scan_id:
            raise ScanUnavailable("scanner response carried no scan id")
        self._digests[scan_id] = digest
        return scan_id

    def list_findings(self, scan_id: str) -> List[Finding]:
        digest = self._digests.get(scan_id, "")
        findings: List[Finding] = []
        page_token: Optional[str] = None
        try:
            with self._client() as client:
                while True:
                    params = {"pageToken": page_token} if page_token else None
                    r = client.get(f"{self.base_url}/scans/{scan_id}/vulnerabilities", params=params)
                    if r.status_code == 202:
                        raise ScanPending(scan_id)
                    r.raise_for_status()
                    body = r.json()
                    findings.extend(finding_from_occurrence(digest, o) for o in body.get("vulnerabilities", []))
                    page_token = body.get("nextPageToken")
                    if not page_token:
                        self._digests.pop(scan_id, None)
                        return findings
        except (httpx.HTTPError, ValueError) as e:
            raise ScanUnavailable(f"listing vulnerabilities failed: {e}") from e
