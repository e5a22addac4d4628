import hashlib
import os
import re

DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")

def is_digest(value: str) -> bool:
    return bool(value) and DIGEST_RE.match(value) is not None

def tree_digest(root: str) -> str:
    """Content digest of a build context directory.

    Files are visited in sorted relative-path order; each contributes its
    POSIX path, a NUL, its content hash and a newline, so renames and content
    edits both change the digest while mtimes do not.
    """
    h = hashlib.sha256()
    entries = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in (".git", "__pycache__"))
        for name in filenames:
            full = os.path.join(dirpath, name)
            entries.append((os.path.relpath(full, root).replace(os.sep, "/"), full))
    for rel, full in sorted(entries):
        with open(full, "rb") as f:
            content_hash = hashlib.sha256(f.read()).hexdigest()
        h.update(rel.encode() + b"\x00" + content_hash.encode() + b"\n")
    return "sha256:" + h.hexdigest()
