"""FastAPI application for the live clinic token queue.

The app exposes the session directory and token mutation endpoints used by
the admin console, and a Server-Sent Events stream that keeps admin and
customer screens in sync.  Configuration comes from environment variables.
The database is reached through SQLModel; Redis, when configured, carries
change events between worker processes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy import text
from sqlmodel import Session

import services
from client import QueueClient
from errors import QueueError, ValidationError
from models import ClinicSession, TokenState
from notifier import get_notifier
from schemas import (
    AdvanceRequest,
    ClinicCreate,
    ClinicRead,
    EndSessionRequest,
    ManualSetRequest,
    ManualSetResult,
    RequeueRequest,
    SessionCreate,
    SessionRead,
    TokenStateRead,
)
from viewer import ViewerRole, ViewerSession

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

PORT = int(os.getenv("PORT", 8000))
HEARTBEAT_SECONDS = float(os.getenv("SSE_HEARTBEAT_SECONDS", "15"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
DEMO_CLINIC_SLUG = os.getenv("DEMO_CLINIC_SLUG")
DEMO_CLINIC_NAME = os.getenv("DEMO_CLINIC_NAME", "City Health Clinic")

app = FastAPI(
    title="Clinic Queue",
    description="Live now-serving numbers for clinic sessions",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    """Create tables and seed the demo clinic when asked to."""
    services.init_db()
    if DEMO_CLINIC_SLUG:
        with services.open_session() as db:
            clinic = services.ensure_clinic(db, DEMO_CLINIC_SLUG, DEMO_CLINIC_NAME)
            logger.info(f"Demo clinic ready at /clinics/{clinic.slug}")
    logger.info(f"Clinic Queue started (notifier: {get_notifier().status()})")


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": type(exc).__name__, "message": str(exc)},
    )


@app.get("/")
def root() -> Dict[str, Any]:
    """Root endpoint with service description."""
    return {
        "service": "Clinic Queue API",
        "status": "running",
        "version": "1.0.0",
        "endpoints": {
            "clinic": "/clinics/{slug}",
            "sessions": "/clinics/{slug}/sessions",
            "token_state": "/clinics/{slug}/sessions/{session_id}/state",
            "stream": "/clinics/{slug}/stream?role=customer|admin",
        },
    }


@app.get("/health")
def health_check() -> Dict[str, Any]:
    try:
        with services.get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Service unhealthy: {e}")
    return {"status": "healthy", "database": "connected", "notifier": get_notifier().status()}


# ===== DIRECTORY =====

@app.post("/clinics", response_model=ClinicRead, status_code=201)
def create_clinic(body: ClinicCreate, db: Session = Depends(services.get_db)):
    return services.create_clinic(db, body.slug, body.name)


@app.get("/clinics/{slug}", response_model=ClinicRead)
def get_clinic(slug: str, db: Session = Depends(services.get_db)):
    return services.resolve_clinic(db, slug)


@app.get("/clinics/{slug}/sessions", response_model=List[SessionRead])
def list_sessions(slug: str, db: Session = Depends(services.get_db)):
    clinic = services.resolve_clinic(db, slug)
    return services.list_sessions(db, clinic.id)


@app.get("/clinics/{slug}/sessions/active", response_model=Optional[SessionRead])
def active_session(slug: str, db: Session = Depends(services.get_db)):
    clinic = services.resolve_clinic(db, slug)
    return services.get_active_session(db, clinic.id)


@app.post("/clinics/{slug}/sessions", response_model=SessionRead, status_code=201)
def add_session(slug: str, body: SessionCreate, db: Session = Depends(services.get_db)):
    clinic = services.resolve_clinic(db, slug)
    return services.add_session(db, clinic.id, body.name)


def _clinic_session(db: Session, slug: str, session_id: int) -> ClinicSession:
    clinic = services.resolve_clinic(db, slug)
    return services.get_session(db, session_id, clinic.id)


@app.post("/clinics/{slug}/sessions/{session_id}/start", response_model=TokenStateRead)
def start_session(slug: str, session_id: int, db: Session = Depends(services.get_db)):
    _clinic_session(db, slug, session_id)
    return services.start_session(db, session_id)


@app.post("/clinics/{slug}/sessions/{session_id}/end", response_model=SessionRead)
def end_session(slug: str, session_id: int, body: EndSessionRequest, db: Session = Depends(services.get_db)):
    """End a session.  Every customer display drops to "no active session"."""
    _clinic_session(db, slug, session_id)
    if not body.confirm:
        raise HTTPException(status_code=409, detail="Ending a session must be confirmed")
    return services.end_session(db, session_id)


# ===== TOKEN STATE =====

@app.get("/clinics/{slug}/sessions/{session_id}/state", response_model=TokenStateRead)
def token_state(slug: str, session_id: int, db: Session = Depends(services.get_db)):
    row = _clinic_session(db, slug, session_id)
    return services.read_token_state(db, row.clinic_id, session_id)


@app.post("/clinics/{slug}/sessions/{session_id}/advance", response_model=TokenStateRead)
def advance(slug: str, session_id: int, body: AdvanceRequest, db: Session = Depends(services.get_db)):
    row = _clinic_session(db, slug, session_id)
    return services.advance(db, row.clinic_id, session_id, body.current_token, body.no_shows)


@app.post("/clinics/{slug}/sessions/{session_id}/next", response_model=TokenStateRead)
def next_patient(slug: str, session_id: int, db: Session = Depends(services.get_db)):
    row = _clinic_session(db, slug, session_id)
    return services.next_patient(db, row.clinic_id, session_id)


@app.post("/clinics/{slug}/sessions/{session_id}/no-show", response_model=TokenStateRead)
def mark_no_show(slug: str, session_id: int, db: Session = Depends(services.get_db)):
    row = _clinic_session(db, slug, session_id)
    return services.mark_no_show(db, row.clinic_id, session_id)


@app.post("/clinics/{slug}/sessions/{session_id}/manual", response_model=ManualSetResult)
def manual_set(slug: str, session_id: int, body: ManualSetRequest, db: Session = Depends(services.get_db)):
    """Override the number being served.  Unparseable input is ignored."""
    row = _clinic_session(db, slug, session_id)
    try:
        state: TokenState = services.manual_set(db, row.clinic_id, session_id, body.value)
        applied = True
    except ValidationError:
        state = services.read_token_state(db, row.clinic_id, session_id)
        applied = False
    return ManualSetResult(applied=applied, state=TokenStateRead.model_validate(state, from_attributes=True))


@app.post("/clinics/{slug}/sessions/{session_id}/requeue", response_model=TokenStateRead)
def requeue_no_show(slug: str, session_id: int, body: RequeueRequest, db: Session = Depends(services.get_db)):
    row = _clinic_session(db, slug, session_id)
    return services.requeue_no_show(db, row.clinic_id, session_id, body.token)


# ===== LIVE STREAM =====

def _sse(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


async def viewer_event_stream(
    viewer: ViewerSession,
    clinic_slug: str,
    heartbeat_seconds: float = HEARTBEAT_SECONDS,
) -> AsyncIterator[str]:
    """Mount ``viewer`` and yield a snapshot after every change.

    A heartbeat goes out when nothing changed for ``heartbeat_seconds`` so
    clients can tell a quiet queue from a dead connection.  The viewer is
    torn down when the client goes away.
    """
    try:
        await viewer.mount(clinic_slug)
        viewer.changed.clear()
        yield _sse(viewer.snapshot())
        while True:
            try:
                await asyncio.wait_for(viewer.changed.wait(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield _sse({"type": "heartbeat"})
                continue
            viewer.changed.clear()
            yield _sse(viewer.snapshot())
    finally:
        viewer.teardown()


@app.get("/clinics/{slug}/stream")
async def stream(slug: str, role: ViewerRole = Query(ViewerRole.customer)):
    """Server-Sent Events feed of one viewer's state."""
    viewer = ViewerSession(QueueClient(), get_notifier(), role)
    return StreamingResponse(
        viewer_event_stream(viewer, slug),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
