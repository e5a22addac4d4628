"""Append-only attestation store keyed by (artifact digest, attestor).

``put`` is insert-or-ignore: the first record for a pair wins and every later
put for that pair returns the stored record, so retries and concurrent runs
converge on one attestation per pair.
"""
from __future__ import annotations

import os
import sqlite3
import threading
from typing import List, Optional

from .model import Attestation
from ..config import DATA_DIR

_SCHEMA = """
CREATE TABLE IF NOT EXISTS attestations(
  artifact_digest TEXT NOT NULL,
  attestor TEXT NOT NULL,
  payload_b64 TEXT NOT NULL,
  signature_b64 TEXT NOT NULL,
  key_version TEXT NOT NULL,
  algorithm TEXT NOT NULL,
  ts TEXT NOT NULL,
  PRIMARY KEY (artifact_digest, attestor)
);
"""

_COLUMNS = "artifact_digest, attestor, payload_b64, signature_b64, key_version, algorithm, ts"


def _row_to_attestation(row) -> Attestation:
    digest, attestor, payload_b64, sig_b64, key_version, alg, ts = row
    return Attestation(
        artifact_digest=digest,
        attestor=attestor,
        payload_b64=payload_b64,
        signature_b64=sig_b64,
        key_version=key_version,
        algorithm=alg,
        timestamp=ts,
    )


class AttestationStore:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or os.path.join(os.getenv("WARDEN_DATA_DIR", DATA_DIR), "attestations.db")
        self._lock = threading.Lock()
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(_SCHEMA)
            finally:
                conn.close()

    def _connect(self) -> sqlite3.Connection:
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=5, isolation_level=None)
        conn.execute('PRAGMA journal_mode=WAL;')
        conn.execute('PRAGMA synchronous=NORMAL;')
        return conn

    def put(self, att: Attestation) -> Attestation:
        """Insert ``att`` unless the pair already exists; return the stored record."""
        with self._lock:
            c = self._connect()
            try:
                c.execute(
                    f'INSERT OR IGNORE INTO attestations({_COLUMNS}) VALUES (?,?,?,?,?,?,?)',
                    (att.artifact_digest, att.attestor, att.payload_b64, att.signature_b64,
                     att.key_version, att.algorithm, att.timestamp),
                )
                row = c.execute(
                    f'SELECT {_COLUMNS} FROM attestations WHERE artifact_digest=? AND attestor=?',
                    (att.artifact_digest, att.attestor),
                ).fetchone()
            finally:
                c.close()
        return _row_to_attestation(row)

    def get(self, digest: str, attestor: str) -> Optional[Attestation]:
        with self._lock:
            c = self._connect()
            try:
                row = c.execute(
                    f'SELECT {_COLUMNS} FROM attestations WHERE artifact_digest=? AND attestor=?',
                    (digest, attestor),
                ).fetchone()
            finally:
                c.close()
        return _row_to_attestation(row) if row else None

    def list(self, digest: str) -> List[Attestation]:
        with self._lock:
            c = self._connect()
            try:
                rows = c.execute(
                    f'SELECT {_COLUMNS} FROM attestations WHERE artifact_digest=? ORDER BY attestor',
                    (digest,),
                ).fetchall()
            finally:
                c.close()
        return [_row_to_attestation(r) for r in rows]

    def count(self) -> int:
        with self._lock:
            c = self._connect()
            try:
                return c.execute('SELECT COUNT(*) FROM attestations').fetchone()[0]
            finally:
                c.close()
