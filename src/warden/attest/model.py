from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
import base64
import json

SIGNATURE_TYPE = "warden container signature"


class Attestation(BaseModel):
    model_config = ConfigDict(frozen=True)

    artifact_digest: str
    attestor: str
    # base64 of the signed simple-signing payload (JCS canonical JSON)
    payload_b64: str
    signature_b64: str
    key_version: str
    algorithm: str
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'))

    @property
    def payload(self) -> dict:
        return json.loads(base64.b64decode(self.payload_b64))

    @property
    def signature(self) -> bytes:
        return base64.b64decode(self.signature_b64)


def build_payload(docker_reference: str, digest: str, attestor: str) -> dict:
    # simple-signing layout: identity + image digest under "critical"
    return {
        "critical": {
            "identity": {"docker-reference": docker_reference},
            "image": {"docker-manifest-digest": digest},
            "type": SIGNATURE_TYPE,
        },
        "optional": {"attestor": attestor},
    }
