"""SQLite-backed artifact store with ``scanning`` and ``production`` partitions.

Two tables per store: ``manifests`` records which digests a partition holds
(append-only, keyed by partition, repository and digest) and ``tags`` holds
the movable ``repository:tag`` pointers. Re-pointing a tag never removes a
digest from its partition, so concurrent runs pushing the same tag do not
unstage each other. Promotion copies a digest into the production partition.
"""
from __future__ import annotations

import os
import sqlite3
import threading
import time
from typing import List, Optional

from .model import Artifact, PARTITIONS, PRODUCTION, SCANNING
from ..config import DATA_DIR
from ..errors import PromotionError, PushError
from ..utils.logging import get_logger

log = get_logger()

_SCHEMA = """
CREATE TABLE IF NOT EXISTS manifests(
  partition TEXT NOT NULL,
  repository TEXT NOT NULL,
  digest TEXT NOT NULL,
  created_ts INTEGER NOT NULL,
  PRIMARY KEY (partition, repository, digest)
);
CREATE INDEX IF NOT EXISTS manifests_digest ON manifests(partition, digest);
CREATE TABLE IF NOT EXISTS tags(
  partition TEXT NOT NULL,
  repository TEXT NOT NULL,
  tag TEXT NOT NULL,
  digest TEXT NOT NULL,
  created_ts INTEGER NOT NULL,
  PRIMARY KEY (partition, repository, tag)
);
"""


class ArtifactStore:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or os.path.join(os.getenv("WARDEN_DATA_DIR", DATA_DIR), "artifacts.db")
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

    def put(self, artifact: Artifact, partition: str = SCANNING) -> Artifact:
        """Record ``artifact.digest`` in ``partition`` and point ``repository:tag`` at it.

        Re-pointing a tag is allowed (tags are mutable); recorded digests stay.
        """
        if partition not in PARTITIONS:
            raise PushError(f"unknown partition {partition!r}")
        with self._lock:
            c = self._connect()
            try:
                now = int(time.time())
                c.execute('BEGIN IMMEDIATE')
                c.execute(
                    'INSERT OR IGNORE INTO manifests(partition,repository,digest,created_ts) VALUES (?,?,?,?)',
                    (partition, artifact.repository, artifact.digest, now),
                )
                c.execute(
                    'INSERT INTO tags(partition,repository,tag,digest,created_ts) VALUES (?,?,?,?,?) '
                    'ON CONFLICT(partition,repository,tag) DO UPDATE SET digest=excluded.digest, created_ts=excluded.created_ts',
                    (partition, artifact.repository, artifact.tag, artifact.digest, now),
                )
                c.execute('COMMIT')
            finally:
                c.close()
        log.info(f"artifact stored partition={partition} ref={artifact.reference}")
        return artifact

    def resolve(self, repository: str, tag: str, partition: str = SCANNING) -> Optional[Artifact]:
        with self._lock:
            c = self._connect()
            try:
                row = c.execute(
                    'SELECT repository, tag, digest FROM tags WHERE partition=? AND repository=? AND tag=?',
                    (partition, repository, tag),
                ).fetchone()
            finally:
                c.close()
        if not row:
            return None
        return Artifact(repository=row[0], tag=row[1], digest=row[2])

    def contains(self, digest: str, partition: str) -> bool:
        with self._lock:
            c = self._connect()
            try:
                row = c.execute('SELECT 1 FROM manifests WHERE partition=? AND digest=? LIMIT 1', (partition, digest)).fetchone()
            finally:
                c.close()
        return row is not None

    def list(self, partition: str) -> List[Artifact]:
        with self._lock:
            c = self._connect()
            try:
                rows = c.execute(
                    'SELECT repository, tag, digest FROM tags WHERE partition=? ORDER BY repository, tag',
                    (partition,),
                ).fetchall()
            finally:
                c.close()
        return [Artifact(repository=r, tag=t, digest=d) for r, t, d in rows]

    def promote(self, artifact: Artifact, repository: str, tag: Optional[str] = None) -> Artifact:
        """Copy a staged digest into the production partition under ``repository``."""
        if not self.contains(artifact.digest, SCANNING):
            raise PromotionError(f"{artifact.digest} is not staged in the {SCANNING} partition")
        promoted = artifact.retag(repository, tag)
        return self.put(promoted, PRODUCTION)
