"""Async access to the queue services.

Viewers run on the event loop, while the service layer talks to the
database synchronously.  ``QueueClient`` runs every call in a worker thread
with its own DB session, so from the caller's side each read or mutation is
a suspending operation that may take arbitrarily long.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterable, List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session

import services
from models import Clinic, ClinicSession, TokenState


class QueueClient:
    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine

    def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        with Session(self.engine or services.get_engine(), expire_on_commit=False) as db:
            return fn(db, *args)

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._run, fn, *args)

    # Directory
    async def resolve_clinic(self, slug: str) -> Clinic:
        return await self._call(services.resolve_clinic, slug)

    async def list_sessions(self, clinic_id: int) -> List[ClinicSession]:
        return await self._call(services.list_sessions, clinic_id)

    async def get_active_session(self, clinic_id: int) -> Optional[ClinicSession]:
        return await self._call(services.get_active_session, clinic_id)

    # Token state
    async def read_token_state(self, clinic_id: int, session_id: int) -> TokenState:
        return await self._call(services.read_token_state, clinic_id, session_id)

    async def advance(self, clinic_id: int, session_id: int, new_current: int,
                      new_no_shows: Optional[Iterable[int]] = None) -> TokenState:
        no_shows = list(new_no_shows) if new_no_shows is not None else None
        return await self._call(services.advance, clinic_id, session_id, new_current, no_shows)

    async def next_patient(self, clinic_id: int, session_id: int) -> TokenState:
        return await self._call(services.next_patient, clinic_id, session_id)

    async def mark_no_show(self, clinic_id: int, session_id: int) -> TokenState:
        return await self._call(services.mark_no_show, clinic_id, session_id)

    async def manual_set(self, clinic_id: int, session_id: int, value: Any) -> TokenState:
        return await self._call(services.manual_set, clinic_id, session_id, value)

    async def requeue_no_show(self, clinic_id: int, session_id: int, token: int) -> TokenState:
        return await self._call(services.requeue_no_show, clinic_id, session_id, token)

    # Sessions
    async def start_session(self, session_id: int) -> TokenState:
        return await self._call(services.start_session, session_id)

    async def end_session(self, session_id: int) -> ClinicSession:
        return await self._call(services.end_session, session_id)

    async def add_session(self, clinic_id: int, name: str) -> ClinicSession:
        return await self._call(services.add_session, clinic_id, name)
