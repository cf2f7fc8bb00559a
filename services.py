"""Database and business logic for the live token queue.

This module owns the engine, the session directory (clinics and their
sessions), the token state store and the mutation API.  All operations
accept a SQLModel ``Session``.  Each mutation commits exactly once and then
broadcasts the full new rows through the change notifier, so subscribers
never observe a half-applied change.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from errors import NotFound, PersistenceError, ValidationError
from models import Clinic, ClinicSession, TokenState, utcnow
from notifier import (
    SESSIONS_TABLE,
    TOKEN_STATE_TABLE,
    change_event,
    get_notifier,
    session_channel,
    token_state_channel,
)

logger = logging.getLogger(__name__)

# Determine the database location.  A full URL in DATABASE_URL is used
# as-is; otherwise default to a SQLite file named ``queue.db`` located in
# the same directory as this module.
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_URL = "sqlite:///" + os.path.join(PROJECT_DIR, "queue.db")

DATABASE_URL = os.getenv("DATABASE_URL", DEFAULT_DB_URL)

_engine: Optional[Engine] = None


def normalize_database_url(url: str) -> str:
    # Hosted Postgres providers still hand out the legacy scheme.
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        url = normalize_database_url(DATABASE_URL)
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        _engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
    return _engine


def set_engine(engine: Optional[Engine]) -> None:
    global _engine
    _engine = engine


def init_db(engine: Optional[Engine] = None) -> None:
    """Create tables if they do not exist."""
    SQLModel.metadata.create_all(engine or get_engine())


def open_session() -> Session:
    return Session(get_engine(), expire_on_commit=False)


def get_db() -> Iterator[Session]:
    """FastAPI dependency: a fresh session per request, closed afterwards."""
    db = open_session()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def store_errors(db: Session, operation: str) -> Iterator[None]:
    """Turn store failures into ``PersistenceError`` after rolling back."""
    try:
        yield
    except (SQLAlchemyError, OverflowError) as e:
        db.rollback()
        logger.error(f"{operation} failed: {e}")
        raise PersistenceError(f"{operation} failed") from e


def row_payload(row: SQLModel) -> Dict[str, Any]:
    return row.model_dump(mode="json")


def broadcast_session(row: ClinicSession, event: str = "UPDATE") -> None:
    get_notifier().publish(
        session_channel(row.clinic_id),
        change_event(SESSIONS_TABLE, event, new=row_payload(row)),
    )


def broadcast_token_state(
    session_id: int,
    event: str,
    new: Optional[TokenState] = None,
    old: Optional[Dict[str, Any]] = None,
) -> None:
    get_notifier().publish(
        token_state_channel(session_id),
        change_event(TOKEN_STATE_TABLE, event, new=row_payload(new) if new is not None else None, old=old),
    )


# ===== SESSION DIRECTORY =====

def create_clinic(db: Session, slug: str, name: str) -> Clinic:
    slug = slug.strip()
    if not slug or not name.strip():
        raise ValidationError("Clinic slug and name are required")
    clinic = Clinic(slug=slug, name=name.strip())
    with store_errors(db, "create clinic"):
        db.add(clinic)
        db.commit()
        db.refresh(clinic)
    logger.info(f"Created clinic {clinic.slug} (id={clinic.id})")
    return clinic


def ensure_clinic(db: Session, slug: str, name: str) -> Clinic:
    try:
        return resolve_clinic(db, slug)
    except NotFound:
        return create_clinic(db, slug, name)


def resolve_clinic(db: Session, slug: str) -> Clinic:
    with store_errors(db, "resolve clinic"):
        clinic = db.exec(select(Clinic).where(Clinic.slug == slug)).first()
    if clinic is None:
        raise NotFound(f"Clinic '{slug}' not found")
    return clinic


def get_clinic(db: Session, clinic_id: int) -> Clinic:
    with store_errors(db, "get clinic"):
        clinic = db.get(Clinic, clinic_id)
    if clinic is None:
        raise NotFound(f"Clinic {clinic_id} not found")
    return clinic


def get_session(db: Session, session_id: int, clinic_id: Optional[int] = None) -> ClinicSession:
    with store_errors(db, "get session"):
        row = db.get(ClinicSession, session_id)
    if row is None or (clinic_id is not None and row.clinic_id != clinic_id):
        raise NotFound(f"Session {session_id} not found")
    return row


def list_sessions(db: Session, clinic_id: int) -> List[ClinicSession]:
    get_clinic(db, clinic_id)
    with store_errors(db, "list sessions"):
        rows = db.exec(
            select(ClinicSession)
            .where(ClinicSession.clinic_id == clinic_id)
            .order_by(ClinicSession.name, ClinicSession.id)
        ).all()
    return list(rows)


def get_active_session(db: Session, clinic_id: int) -> Optional[ClinicSession]:
    with store_errors(db, "get active session"):
        return db.exec(
            select(ClinicSession)
            .where(ClinicSession.clinic_id == clinic_id, ClinicSession.is_active == True)  # noqa: E712
            .order_by(ClinicSession.id)
        ).first()


# ===== TOKEN STATE STORE =====

def read_token_state(db: Session, clinic_id: int, session_id: int) -> TokenState:
    with store_errors(db, "read token state"):
        state = db.get(TokenState, (clinic_id, session_id))
    if state is None:
        raise NotFound(f"No token state for session {session_id}")
    return state


def replace_token_state(
    db: Session,
    clinic_id: int,
    session_id: int,
    current_token: int,
    no_shows: Iterable[int],
) -> TokenState:
    """Overwrite every field of the row (insert if absent).  Does not commit."""
    state = db.get(TokenState, (clinic_id, session_id))
    if state is None:
        state = TokenState(clinic_id=clinic_id, session_id=session_id)
    state.current_token = current_token
    state.no_shows = sorted(set(no_shows))
    state.last_updated = utcnow()
    db.add(state)
    return state


def delete_token_state(db: Session, session_id: int) -> List[Dict[str, Any]]:
    """Remove every token state row of the session.  Does not commit.

    Returns the deleted rows as payloads so they can be broadcast.
    """
    rows = db.exec(select(TokenState).where(TokenState.session_id == session_id)).all()
    removed = []
    for row in rows:
        removed.append(row_payload(row))
        db.delete(row)
    # Flush so a following insert with the same key does not collide.
    db.flush()
    return removed


# ===== MUTATION API =====

def start_session(db: Session, session_id: int) -> TokenState:
    """Make ``session_id`` the clinic's only active session and reset its tokens.

    Deactivation, activation and the reset are one transaction.
    """
    target = get_session(db, session_id)
    clinic_id = target.clinic_id
    with store_errors(db, "start session"):
        siblings = db.exec(select(ClinicSession).where(ClinicSession.clinic_id == clinic_id)).all()
        changed = []
        for row in siblings:
            active = row.id == session_id
            if row.is_active != active:
                row.is_active = active
                db.add(row)
                changed.append(row)
        removed = delete_token_state(db, session_id)
        state = replace_token_state(db, clinic_id, session_id, 1, [])
        db.commit()
        for row in changed:
            db.refresh(row)
        db.refresh(state)

    logger.info(f"Started session {session_id} for clinic {clinic_id}")
    # Deactivations first so a listener never sees two active rows.
    for row in sorted(changed, key=lambda r: r.is_active):
        broadcast_session(row)
    for old in removed:
        broadcast_token_state(session_id, "DELETE", old=old)
    broadcast_token_state(session_id, "INSERT", new=state)
    return state


def end_session(db: Session, session_id: int) -> ClinicSession:
    """Deactivate the session.  Its token state is kept until the next start."""
    row = get_session(db, session_id)
    with store_errors(db, "end session"):
        row.is_active = False
        db.add(row)
        db.commit()
        db.refresh(row)
    logger.info(f"Ended session {session_id} for clinic {row.clinic_id}")
    broadcast_session(row)
    return row


def add_session(db: Session, clinic_id: int, name: str) -> ClinicSession:
    get_clinic(db, clinic_id)
    name = (name or "").strip()
    if not name:
        raise ValidationError("Session name is required")
    row = ClinicSession(clinic_id=clinic_id, name=name, is_active=False)
    with store_errors(db, "add session"):
        db.add(row)
        db.commit()
        db.refresh(row)
    logger.info(f"Added session '{name}' (id={row.id}) to clinic {clinic_id}")
    broadcast_session(row, "INSERT")
    return row


# Largest value a 64-bit INTEGER column holds.
MAX_TOKEN = 2**63 - 1


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def advance(
    db: Session,
    clinic_id: int,
    session_id: int,
    new_current: int,
    new_no_shows: Optional[Iterable[int]] = None,
) -> TokenState:
    """Replace the token state of an active session.

    ``new_no_shows`` replaces the stored set when given; otherwise the
    stored set is carried over.  Numbers newly added to the set must
    already have been called and lie below the new number being served.
    """
    get_clinic(db, clinic_id)
    session_row = get_session(db, session_id, clinic_id)
    if not session_row.is_active:
        raise NotFound(f"Session {session_id} is not active")
    state = read_token_state(db, clinic_id, session_id)

    if not _is_int(new_current) or not 1 <= new_current <= MAX_TOKEN:
        raise ValidationError(f"Token number must be a positive integer, got {new_current!r}")
    if new_no_shows is None:
        no_shows = list(state.no_shows)
    else:
        no_shows = list(new_no_shows)
        for token in no_shows:
            if not _is_int(token) or not 0 <= token <= MAX_TOKEN:
                raise ValidationError(f"No-show must be a non-negative integer, got {token!r}")
        added = set(no_shows) - set(state.no_shows)
        late = [t for t in added if t > state.current_token or t >= new_current]
        if late:
            raise ValidationError(
                f"No-shows {sorted(late)} must already have been called and passed "
                f"(serving {state.current_token}, moving to {new_current})"
            )

    with store_errors(db, "advance token"):
        state = replace_token_state(db, clinic_id, session_id, new_current, no_shows)
        db.commit()
        db.refresh(state)
    logger.info(f"Session {session_id}: now serving {state.current_token}, no-shows {state.no_shows}")
    broadcast_token_state(session_id, "UPDATE", new=state)
    return state


def next_patient(db: Session, clinic_id: int, session_id: int) -> TokenState:
    state = read_token_state(db, clinic_id, session_id)
    return advance(db, clinic_id, session_id, state.current_token + 1)


def mark_no_show(db: Session, clinic_id: int, session_id: int) -> TokenState:
    """Record the number being served as missed and call the next one."""
    state = read_token_state(db, clinic_id, session_id)
    current = state.current_token
    return advance(db, clinic_id, session_id, current + 1, list(state.no_shows) + [current])


def parse_token(value: Any) -> int:
    if _is_int(value):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Not a token number: {value!r}") from None


def manual_set(db: Session, clinic_id: int, session_id: int, value: Any) -> TokenState:
    """Override the number being served.  No-shows are left untouched."""
    return advance(db, clinic_id, session_id, parse_token(value))


def requeue_no_show(db: Session, clinic_id: int, session_id: int, token: int) -> TokenState:
    """Drop ``token`` from the no-show set; the number being served stays."""
    state = read_token_state(db, clinic_id, session_id)
    remaining = [t for t in state.no_shows if t != token]
    return advance(db, clinic_id, session_id, state.current_token, remaining)
