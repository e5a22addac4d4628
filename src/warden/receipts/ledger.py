"""Hash-chained JSONL ledger of pipeline run receipts.

Each line carries ``prev_receipt_hash_b64`` (leaf hash of the previous line)
and ``leaf_hash_b64`` = SHA-256 over the JCS canonical form of the receipt
without its own leaf hash. ``verify()`` walks the chain; an edited, dropped
or reordered line breaks it.
"""
import base64
import datetime
import hashlib
import json
import os
import threading
import uuid
from typing import Any, Dict, Iterator, Optional

from ..config import DATA_DIR
from ..crypto.jcs import jcs_canonicalize


def _leaf_hash_b64(rec: Dict[str, Any]) -> str:
    temp = dict(rec)
    temp.pop("leaf_hash_b64", None)
    return base64.b64encode(hashlib.sha256(jcs_canonicalize(temp)).digest()).decode()


class RunLedger:
    def __init__(self, path: Optional[str] = None):
        self.path = path or os.path.join(os.getenv("WARDEN_DATA_DIR", DATA_DIR), "runs.jsonl")
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        self._lock = threading.Lock()

    def _last_hash_b64(self) -> Optional[str]:
        if not os.path.exists(self.path):
            return None
        h = None
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    h = json.loads(line).get("leaf_hash_b64")
        return h

    def append(self, body: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            rec = {
                "id": str(uuid.uuid4()),
                "type": "warden.run",
                "time": datetime.datetime.now(datetime.timezone.utc).isoformat().replace('+00:00', 'Z'),
                "body": body,
                "prev_receipt_hash_b64": self._last_hash_b64(),
            }
            rec["leaf_hash_b64"] = _leaf_hash_b64(rec)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(rec) + "\n")
        return rec

    def entries(self) -> Iterator[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    yield json.loads(line)

    def verify(self) -> bool:
        prev = None
        for rec in self.entries():
            if rec.get("prev_receipt_hash_b64") != prev:
                return False
            if rec.get("leaf_hash_b64") != _leaf_hash_b64(rec):
                return False
            prev = rec["leaf_hash_b64"]
        return True
