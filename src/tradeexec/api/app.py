from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from tradeexec.domain.errors import AdmissionError
from tradeexec.runtime.container import Container

logger = logging.getLogger(__name__)


class ExecuteDecisionBody(BaseModel):
    decision_id: str | None = None


class CredentialResetBody(BaseModel):
    user_id: str = Field(min_length=1)
    exchange: str = Field(min_length=1)


def create_app(container: Container, *, start_scheduler: bool | None = None) -> FastAPI:
    """HTTP surface over the execution core.

    ``start_scheduler`` defaults to ``RECONCILE_ENABLED``; tests pass
    ``False`` to keep the background loop out of request handling.
    """
    run_scheduler = (
        container.settings.reconcile_enabled if start_scheduler is None else start_scheduler
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if run_scheduler:
            container.scheduler.start()
        try:
            yield
        finally:
            container.close()

    app = FastAPI(title="tradeexec", version="0.4.0", lifespan=lifespan)
    app.state.container = container

    @app.exception_handler(AdmissionError)
    async def admission_error_handler(_: Request, exc: AdmissionError) -> JSONResponse:
        logger.info(
            "decision_admission_rejected",
            extra={"extra": {"reason": exc.reason.value, "status_code": exc.status_code}},
        )
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after is not None else None
        return JSONResponse(status_code=exc.status_code, content=exc.as_body(), headers=headers)

    # Handlers are plain functions so FastAPI runs them in its worker threadpool.
    @app.post("/decisions/execute")
    def execute_decision(
        body: ExecuteDecisionBody | None = None,
        x_decision_signature: str | None = Header(default=None),
        x_decision_timestamp: str | None = Header(default=None),
        x_decision_nonce: str | None = Header(default=None),
    ) -> dict[str, Any]:
        return container.execution.execute(
            body.decision_id if body is not None else None,
            signature=x_decision_signature,
            timestamp=x_decision_timestamp,
            nonce=x_decision_nonce,
        )

    @app.get("/health")
    def health() -> dict[str, Any]:
        summary = container.health.health_summary()
        return {
            "status": "ok",
            "reconcile_state": container.reconciliation.state.value,
            "scheduler_running": container.scheduler.running,
            "credentials": {
                "total": summary.total,
                "healthy": summary.healthy,
                "quarantined": summary.quarantined,
            },
        }

    @app.get("/admin/credential-health")
    def credential_health() -> dict[str, Any]:
        summary = container.health.health_summary()
        return {
            "total": summary.total,
            "healthy": summary.healthy,
            "quarantined": summary.quarantined,
            "records": [record.as_dict() for record in summary.records],
        }

    @app.post("/admin/credential-health/reset")
    def reset_credential_health(body: CredentialResetBody) -> dict[str, Any]:
        removed = container.health.reset_by_user_prefix(body.user_id, body.exchange)
        return {"reset": removed, "user_id": body.user_id, "exchange": body.exchange.lower()}

    @app.post("/admin/reconciliation/run")
    def run_reconciliation() -> dict[str, Any]:
        return container.reconciliation.run_once().as_dict()

    @app.get("/metrics")
    def metrics() -> Response:
        if container.metrics is None:
            raise HTTPException(status_code=404, detail="metrics disabled")
        return Response(content=container.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    return app
