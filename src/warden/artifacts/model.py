from __future__ import annotations

import re
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

from ..crypto.digest import is_digest

SCANNING = "scanning"
PRODUCTION = "production"
PARTITIONS = (SCANNING, PRODUCTION)

# host[:port]/path/image (tag and digest split off beforehand)
_REPO_RE = re.compile(
    r"^[A-Za-z0-9][A-Za-z0-9.\-]*(?::[0-9]+)?"
    r"(?:/[a-z0-9]+(?:[._\-]+[a-z0-9]+)*)*$"
)


class Artifact(BaseModel):
    """Immutable built image. ``digest`` is content-derived; ``tag`` is a mutable pointer
    held by the store, so a re-tag is a new Artifact value, never an edit."""

    model_config = ConfigDict(frozen=True)

    repository: str
    tag: str = "latest"
    digest: str

    @field_validator("digest")
    @classmethod
    def _check_digest(cls, v: str) -> str:
        if not is_digest(v):
            raise ValueError(f"digest must be sha256:<64 hex>, got {v!r}")
        return v

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}@{self.digest}"

    @property
    def tagged(self) -> str:
        return f"{self.repository}:{self.tag}"

    @property
    def by_digest(self) -> str:
        return f"{self.repository}@{self.digest}"

    def retag(self, repository: str, tag: Optional[str] = None) -> "Artifact":
        return Artifact(repository=repository, tag=tag or self.tag, digest=self.digest)


def parse_reference(ref: str) -> Tuple[str, Optional[str], Optional[str]]:
    """Split an image reference into (repository, tag, digest).

    A colon only starts a tag when it follows the last path segment, so
    ``localhost:5000/app`` keeps its registry port.
    """
    ref = ref.strip()
    digest = None
    if "@" in ref:
        ref, digest = ref.split("@", 1)
        if not is_digest(digest):
            raise ValueError(f"invalid digest in reference: {digest!r}")
    tag = None
    last = ref.rsplit("/", 1)[-1]
    if ":" in last:
        ref, tag = ref.rsplit(":", 1)
    if not ref or not _REPO_RE.match(ref):
        raise ValueError(f"invalid image reference: {ref!r}")
    return ref, tag, digest
