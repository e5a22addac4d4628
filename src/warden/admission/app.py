from __future__ import annotations

from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .controller import LocalAdmissionController
from ..crypto.digest import is_digest
from ..obs.prom import prometheus_latest
from ..policy.model import PolicyHolder
from ..utils.logging import get_logger

log = get_logger()


class AuthorizeRequest(BaseModel):
    digest: str
    requested_policy: Optional[str] = None
    # the caller's policy snapshot; it can add required attestors, never remove them
    policy: Optional[Dict[str, Any]] = None


def create_app(controller: LocalAdmissionController, policies: PolicyHolder) -> FastAPI:
    app = FastAPI(title="warden admission controller")

    @app.get("/__health")
    async def health():
        return {"status": "ok"}

    @app.get("/policy")
    async def policy():
        return policies.snapshot().as_dict()

    @app.post("/authorize")
    async def authorize(body: AuthorizeRequest):
        if not is_digest(body.digest):
            raise HTTPException(status_code=400, detail="digest must be sha256:<64 hex>")
        pol = policies.snapshot()
        if body.requested_policy and body.requested_policy != pol.name:
            log.info(f"authorize: caller asked for policy {body.requested_policy}, enforcing {pol.name}")
        if body.policy:
            extra = set(body.policy.get("required_attestors") or ()) - pol.required_attestors
            if extra:
                log.info(f"authorize: caller also requires {sorted(extra)}")
                pol = pol.requiring(extra)
        decision = controller.authorize(body.digest, pol)
        return JSONResponse({**decision.as_dict(), "policy": pol.as_dict()}, status_code=200)

    @app.get("/attestors")
    async def attestors():
        return {"attestors": controller.registry.names()}

    @app.get("/attestations/{digest}")
    async def attestations(digest: str):
        if not is_digest(digest):
            raise HTTPException(status_code=400, detail="digest must be sha256:<64 hex>")
        return [a.model_dump() for a in controller.store.list(digest)]

    @app.get("/metrics")
    async def metrics():
        body, content_type = prometheus_latest()
        return Response(content=body, media_type=content_type)

    return app


def run_app(app: FastAPI, *, host: str = "127.0.0.1", port: int = 8080, log_level: str = "info") -> None:
    uvicorn.run(app, host=host, port=port, log_level=log_level)
