"""Database models for the live token queue.

We use SQLModel to define the schema.  A clinic owns any number of
sessions (shifts), at most one of which is active.  The active session has
a single token state row holding the number being served and the set of
numbers that were called but did not show up.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Clinic(SQLModel, table=True):
    __tablename__ = "clinics"

    id: Optional[int] = Field(default=None, primary_key=True)
    slug: str = Field(index=True, unique=True)
    name: str


class ClinicSession(SQLModel, table=True):
    __tablename__ = "clinic_sessions"

    id: Optional[int] = Field(default=None, primary_key=True)
    clinic_id: int = Field(foreign_key="clinics.id", index=True)
    name: str
    is_active: bool = Field(default=False)


class TokenState(SQLModel, table=True):
    """Now-serving number and no-show set for one session.

    ``no_shows`` is kept sorted and free of duplicates.  Rows are always
    overwritten as a whole, never patched field by field.
    """

    __tablename__ = "token_state"

    clinic_id: int = Field(foreign_key="clinics.id", primary_key=True)
    session_id: int = Field(foreign_key="clinic_sessions.id", primary_key=True)
    current_token: int = Field(default=1)
    no_shows: List[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    last_updated: datetime = Field(default_factory=utcnow)
