from __future__ import annotations

from fastapi import FastAPI, HTTPException, Query, status

from . import db
from .api_models import EventModel, ReconcileResponse, StatusResponse
from .reconciler import Reconciler
from .runtime import RuntimeState


def create_app(runtime: RuntimeState, reconciler: Reconciler | None = None) -> FastAPI:
    app = FastAPI(title="dockserve", docs_url=None, redoc_url=None)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy", "state": runtime.get_state().value}

    @app.get("/status", response_model=StatusResponse)
    def get_status() -> dict:
        return runtime.snapshot()

    @app.get("/events", response_model=list[EventModel])
    def events(limit: int = Query(50, ge=1, le=1000)) -> list[dict]:
        return db.latest_events(limit)

    @app.post("/reconcile", response_model=ReconcileResponse, status_code=status.HTTP_202_ACCEPTED)
    def reconcile() -> ReconcileResponse:
        if reconciler is None or reconciler.stopping:
            raise HTTPException(status_code=503, detail="reconciler is not running")
        return ReconcileResponse(queued=reconciler.trigger("api"))

    return app
