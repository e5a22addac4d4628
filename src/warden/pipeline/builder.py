from __future__ import annotations

import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Protocol, runtime_checkable

from ..artifacts.model import Artifact, parse_reference
from ..crypto.digest import is_digest, tree_digest
from ..errors import BuildError, PromotionError, PushError
from ..utils.logging import get_logger

log = get_logger()

_PUSH_DIGEST_RE = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")


@runtime_checkable
class Builder(Protocol):
    def build(self, context_dir: str, image: str) -> Artifact: ...
    def push(self, artifact: Artifact) -> Artifact: ...
    def copy(self, source: Artifact, target: Artifact) -> Artifact: ...


def _split_image(image: str) -> tuple[str, str]:
    try:
        repo, tag, _ = parse_reference(image)
    except ValueError as e:
        raise BuildError(str(e)) from e
    return repo, tag or "latest"


@dataclass
class LocalBuilder:
    """Content-addressed builder without a container runtime.

    The digest is the tree digest of the build context, so identical sources
    always give the same artifact. Push and copy are bookkeeping only; the
    artifact store records partitions.
    """

    dockerfile: str = "Dockerfile"

    def build(self, context_dir: str, image: str) -> Artifact:
        if not os.path.isdir(context_dir):
            raise BuildError(f"build context not found: {context_dir}")
        if self.dockerfile and not os.path.exists(os.path.join(context_dir, self.dockerfile)):
            raise BuildError(f"{self.dockerfile} missing in {context_dir}")
        repo, tag = _split_image(image)
        art = Artifact(repository=repo, tag=tag, digest=tree_digest(context_dir))
        log.info(f"built {art.reference}")
        return art

    def push(self, artifact: Artifact) -> Artifact:
        return artifact

    def copy(self, source: Artifact, target: Artifact) -> Artifact:
        if source.digest != target.digest:
            raise PromotionError("promotion must keep the digest")
        return target


class DockerBuilder:
    """Drives the docker CLI. The pushed manifest digest becomes the artifact digest."""

    def __init__(self, docker: Optional[str] = None, timeout: float = 1800):
        self.docker = docker or shutil.which("docker") or "docker"
        self.timeout = timeout

    def _run(self, args: List[str], error: type) -> str:
        cmd = [self.docker] + args
        log.info("exec: " + " ".join(cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise error(f"{' '.join(cmd)} failed: {e}") from e
        if proc.returncode != 0:
            raise error(f"{' '.join(cmd)} exited {proc.returncode}: {proc.stderr.strip()[-500:]}")
        return proc.stdout

    def build(self, context_dir: str, image: str) -> Artifact:
        repo, tag = _split_image(image)
        self._run(["build", "-t", f"{repo}:{tag}", context_dir], BuildError)
        image_id = self._run(["image", "inspect", "--format", "{{.Id}}", f"{repo}:{tag}"], BuildError).strip()
        if not is_digest(image_id):
            raise BuildError(f"unexpected image id {image_id!r}")
        # local image id until the registry assigns a manifest digest on push
        return Artifact(repository=repo, tag=tag, digest=image_id)

    def push(self, artifact: Artifact) -> Artifact:
        out = self._run(["push", artifact.tagged], PushError)
        m = _PUSH_DIGEST_RE.search(out)
        if not m:
            raise PushError(f"could not read manifest digest from push of {artifact.tagged}")
        return Artifact(repository=artifact.repository, tag=artifact.tag, digest=m.group(1))

    def copy(self, source: Artifact, target: Artifact) -> Artifact:
        self._run(["tag", source.by_digest, target.tagged], PromotionError)
        pushed = self._run(["push", target.tagged], PromotionError)
        m = _PUSH_DIGEST_RE.search(pushed)
        if m and m.group(1) != source.digest:
            raise PromotionError(f"registry reported {m.group(1)} for {target.tagged}, expected {source.digest}")
        return target
