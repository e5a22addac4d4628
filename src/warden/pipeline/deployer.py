from __future__ import annotations

import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Sequence, runtime_checkable

from ..artifacts.model import Artifact
from ..errors import DeployError
from ..utils.logging import get_logger

log = get_logger()


@dataclass(frozen=True)
class Deployment:
    service: str
    region: str
    image: str
    revision: str
    url: Optional[str] = None
    time: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'))

    def as_dict(self):
        return {"service": self.service, "region": self.region, "image": self.image,
                "revision": self.revision, "url": self.url, "time": self.time}


@runtime_checkable
class Deployer(Protocol):
    def deploy(self, artifact: Artifact, service: str, region: str) -> Deployment: ...


class LocalDeployer:
    """In-process stand-in for a managed run target; keeps revision history per service."""

    def __init__(self):
        self._lock = threading.Lock()
        self._revisions: Dict[str, List[Deployment]] = {}

    def deploy(self, artifact: Artifact, service: str, region: str) -> Deployment:
        with self._lock:
            history = self._revisions.setdefault(service, [])
            dep = Deployment(
                service=service,
                region=region,
                image=artifact.by_digest,
                revision=f"{service}-{len(history) + 1:05d}",
                url=f"http://{service}.{region}.local",
            )
            history.append(dep)
        log.info(f"deployed {dep.image} as {dep.revision}")
        return dep

    def revisions(self, service: str) -> List[Deployment]:
        with self._lock:
            return list(self._revisions.get(service, []))


class GcloudRunDeployer:
    """Deploys with ``gcloud run deploy``; the image is always pinned by digest."""

    def __init__(self, gcloud: Optional[str] = None, extra_args: Sequence[str] = (), timeout: float = 900):
        self.gcloud = gcloud or shutil.which("gcloud") or "gcloud"
        self.extra_args = list(extra_args)
        self.timeout = timeout

    def deploy(self, artifact: Artifact, service: str, region: str) -> Deployment:
        cmd = [self.gcloud, "run", "deploy", service, "--image", artifact.by_digest,
               "--region", region, "--platform", "managed", "--format", "value(status.url)"] + self.extra_args
        log.info("exec: " + " ".join(cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise DeployError(f"gcloud run deploy failed: {e}") from e
        if proc.returncode != 0:
            raise DeployError(f"gcloud run deploy exited {proc.returncode}: {proc.stderr.strip()[-500:]}")
        return Deployment(service=service, region=region, image=artifact.by_digest,
                          revision="latest", url=proc.stdout.strip() or None)
