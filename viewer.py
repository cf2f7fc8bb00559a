"""Live viewers of a clinic's queue.

``QueueState`` keeps a local copy of one session's token state: it
subscribes to the session's change channel, seeds itself with a point read
and then lets every change event overwrite the copy.  ``ViewerSession``
wraps it in the screen-level state machine shared by the admin console and
the customer display::

    uninitialized -> resolving_clinic -> resolving_session
        -> no_active_session | subscribed -> torn_down
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

from client import QueueClient
from errors import Forbidden, NotFound, PersistenceError, ValidationError
from models import Clinic, ClinicSession, TokenState
from notifier import Subscription, session_channel, token_state_channel

logger = logging.getLogger(__name__)


class TokenView(NamedTuple):
    current_token: int
    no_shows: Tuple[int, ...]


EMPTY_VIEW = TokenView(1, ())


class QueueState:
    """Locally synchronised token state for one (clinic, session) pair.

    The view is an immutable tuple swapped in one assignment, so readers
    never see a number from one event next to no-shows from another.
    """

    def __init__(self, client: QueueClient, notifier: Any, clinic_id: Optional[int],
                 session_id: Optional[int], on_change: Optional[Callable[[], None]] = None):
        self.client = client
        self.notifier = notifier
        self.clinic_id = clinic_id
        self.session_id = session_id
        self.on_change = on_change
        self.loading = True
        self.last_synced_at: Optional[datetime] = None
        self._view = EMPTY_VIEW
        self._subscription: Optional[Subscription] = None
        self._event_since_seed = False
        self._reseed_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def view(self) -> TokenView:
        return self._view

    @property
    def current_token(self) -> int:
        return self._view.current_token

    @property
    def no_shows(self) -> List[int]:
        return list(self._view.no_shows)

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        if not self.clinic_id or not self.session_id:
            self.loading = False
            self._set_view(EMPTY_VIEW)
            return
        self.loading = True
        # Subscribe before reading so nothing committed after the read is missed.
        self._subscription = await self.notifier.subscribe(
            token_state_channel(self.session_id),
            self._on_event,
            on_reconnect=self._on_reconnect,
        )
        if self._closed:
            self._subscription.close()
            return
        await self._seed()

    async def _seed(self) -> None:
        self._event_since_seed = False
        try:
            state = await self.client.read_token_state(self.clinic_id, self.session_id)
        except NotFound:
            state = None
        if self._closed:
            return
        # An event applied while the read was in flight is at least as new.
        if state is not None and not self._event_since_seed:
            self._set_view(TokenView(state.current_token, tuple(state.no_shows)))
        self.loading = False
        self._touch()

    def _on_event(self, payload: Dict[str, Any]) -> None:
        row = payload.get("new")
        if self._closed or not row:
            return
        self._event_since_seed = True
        self._set_view(TokenView(int(row["current_token"]), tuple(row.get("no_shows") or ())))

    def _on_reconnect(self) -> None:
        if self._closed:
            return
        logger.info(f"Re-seeding session {self.session_id} after reconnect")
        self._reseed_task = asyncio.ensure_future(self._reseed())

    async def _reseed(self) -> None:
        try:
            await self._seed()
        except PersistenceError as e:
            logger.warning(f"Re-seed of session {self.session_id} failed: {e}")

    def _set_view(self, view: TokenView) -> None:
        self._view = view
        self.last_synced_at = datetime.now(timezone.utc)
        self._touch()

    def _touch(self) -> None:
        if self.on_change is not None:
            self.on_change()

    async def advance(self, new_current: int, new_no_shows: Optional[Iterable[int]] = None) -> TokenState:
        """Write a new state.  The local view follows via the change feed."""
        return await self.client.advance(self.clinic_id, self.session_id, new_current, new_no_shows)

    def close(self) -> None:
        self._closed = True
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._reseed_task is not None:
            self._reseed_task.cancel()
            self._reseed_task = None


class ViewerRole(str, Enum):
    admin = "admin"
    customer = "customer"


class ViewerState(str, Enum):
    uninitialized = "uninitialized"
    resolving_clinic = "resolving_clinic"
    resolving_session = "resolving_session"
    no_active_session = "no_active_session"
    subscribed = "subscribed"
    torn_down = "torn_down"


class ViewerSession:
    """One connected screen (admin console or customer display) for a clinic."""

    def __init__(self, client: QueueClient, notifier: Any, role: ViewerRole = ViewerRole.customer):
        self.client = client
        self.notifier = notifier
        self.role = ViewerRole(role)
        self.state = ViewerState.uninitialized
        self.clinic: Optional[Clinic] = None
        self.session: Optional[ClinicSession] = None
        self.sessions: List[ClinicSession] = []
        self.queue: Optional[QueueState] = None
        self.changed = asyncio.Event()
        self._session_subscription: Optional[Subscription] = None
        self._tasks: Set[asyncio.Task] = set()
        self._resolve_lock = asyncio.Lock()
        self._generation = 0

    @property
    def is_admin(self) -> bool:
        return self.role is ViewerRole.admin

    def _stale(self, generation: int) -> bool:
        return generation != self._generation or self.state is ViewerState.torn_down

    def _set_state(self, state: ViewerState) -> None:
        if self.state is not state:
            logger.debug(f"{self.role.value} viewer: {self.state.value} -> {state.value}")
        self.state = state
        self._touch()

    def _touch(self) -> None:
        self.changed.set()

    async def mount(self, clinic_slug: str) -> None:
        if self.state is not ViewerState.uninitialized:
            raise RuntimeError(f"Viewer already mounted ({self.state.value})")
        generation = self._generation
        self._set_state(ViewerState.resolving_clinic)
        try:
            clinic = await self.client.resolve_clinic(clinic_slug)
        except NotFound:
            # Shown exactly like loading.
            logger.info(f"Clinic '{clinic_slug}' not found")
            return
        if self._stale(generation):
            return
        self.clinic = clinic
        self._set_state(ViewerState.resolving_session)

        subscription = await self.notifier.subscribe(
            session_channel(clinic.id),
            self._on_session_event,
            on_reconnect=self._on_session_reconnect,
        )
        if self._stale(generation):
            subscription.close()
            return
        self._session_subscription = subscription
        await self._resolve_active_session(generation)

    async def remount(self, clinic_slug: str) -> None:
        """Switch to another clinic: tear everything down, then mount afresh."""
        self.teardown()
        self.clinic = None
        self.session = None
        self.sessions = []
        self.state = ViewerState.uninitialized
        await self.mount(clinic_slug)

    async def _resolve_active_session(self, generation: int) -> None:
        async with self._resolve_lock:
            if self._stale(generation) or self.clinic is None:
                return
            if self.is_admin:
                sessions = await self.client.list_sessions(self.clinic.id)
                if self._stale(generation):
                    return
                self.sessions = sessions
                self._touch()
            active = await self.client.get_active_session(self.clinic.id)
            if self._stale(generation):
                return

            if active is None:
                self._release_queue()
                self.session = None
                self._set_state(ViewerState.no_active_session)
                return
            if self.queue is not None and self.session is not None and self.session.id == active.id:
                self.session = active
                self._set_state(ViewerState.subscribed)
                return

            self._release_queue()
            self.session = active
            queue = QueueState(self.client, self.notifier, self.clinic.id, active.id, on_change=self._touch)
            self.queue = queue
            try:
                await queue.start()
            except Exception:
                self._release_queue()
                raise
            if self._stale(generation) or queue.closed:
                return
            self._set_state(ViewerState.subscribed)

    def _on_session_event(self, payload: Dict[str, Any]) -> None:
        if self.state is ViewerState.torn_down:
            return
        row = payload.get("new") or {}
        if (
            self.is_admin
            and self.session is not None
            and row.get("id") == self.session.id
            and not row.get("is_active")
        ):
            self._release_queue()
            self.session = None
            self._set_state(ViewerState.no_active_session)
        self._spawn(self._resolve_active_session(self._generation))

    def _on_session_reconnect(self) -> None:
        # Session events may have been missed while disconnected.
        self._spawn(self._resolve_active_session(self._generation))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"{self.role.value} viewer refresh failed: {task.exception()}")

    def _release_queue(self) -> None:
        if self.queue is not None:
            self.queue.close()
            self.queue = None

    def teardown(self) -> None:
        """Release every subscription.  No view changes happen after this returns."""
        self._generation += 1
        self._release_queue()
        if self._session_subscription is not None:
            self._session_subscription.close()
            self._session_subscription = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._set_state(ViewerState.torn_down)

    def snapshot(self) -> Dict[str, Any]:
        queue = self.queue
        view = queue.view if queue is not None else EMPTY_VIEW
        data: Dict[str, Any] = {
            "type": "snapshot",
            "role": self.role.value,
            "state": self.state.value,
            "clinic": None,
            "session": None,
            "current_token": view.current_token,
            "no_shows": list(view.no_shows),
            "loading": queue.loading if queue is not None else self.state in (
                ViewerState.resolving_clinic, ViewerState.resolving_session),
        }
        if self.clinic is not None:
            data["clinic"] = {"id": self.clinic.id, "slug": self.clinic.slug, "name": self.clinic.name}
        if self.session is not None:
            data["session"] = {"id": self.session.id, "name": self.session.name}
        if self.is_admin:
            data["sessions"] = [
                {"id": s.id, "name": s.name, "is_active": s.is_active} for s in self.sessions
            ]
        return data

    # ===== ADMIN ACTIONS =====

    def _require_admin(self) -> None:
        if not self.is_admin:
            raise Forbidden("Only the admin viewer can change the queue")

    def _active_ids(self) -> Tuple[int, int]:
        if self.clinic is None or self.session is None:
            raise NotFound("No active session")
        return self.clinic.id, self.session.id

    async def refresh(self) -> None:
        await self._resolve_active_session(self._generation)

    async def start_session(self, session_id: int) -> TokenState:
        self._require_admin()
        state = await self.client.start_session(session_id)
        await self.refresh()
        return state

    async def end_session(self, confirmed: bool = False) -> bool:
        """End the active session.  Nothing happens unless ``confirmed``."""
        self._require_admin()
        if not confirmed:
            return False
        _, session_id = self._active_ids()
        await self.client.end_session(session_id)
        await self.refresh()
        return True

    async def add_session(self, name: Optional[str]) -> Optional[ClinicSession]:
        self._require_admin()
        if not name or self.clinic is None:
            return None
        row = await self.client.add_session(self.clinic.id, name)
        await self.refresh()
        return row

    async def _token_action(self, action: Callable[..., Any], *args: Any) -> Optional[TokenState]:
        self._require_admin()
        clinic_id, session_id = self._active_ids()
        try:
            return await action(clinic_id, session_id, *args)
        except PersistenceError as e:
            logger.error(f"Error updating token: {e}")
            return None

    async def next_patient(self) -> Optional[TokenState]:
        return await self._token_action(self.client.next_patient)

    async def mark_no_show(self) -> Optional[TokenState]:
        return await self._token_action(self.client.mark_no_show)

    async def manual_set(self, raw_value: Any) -> Optional[TokenState]:
        # A mistyped override is ignored, no error is shown.
        try:
            return await self._token_action(self.client.manual_set, raw_value)
        except ValidationError:
            logger.debug(f"Ignoring manual token {raw_value!r}")
            return None

    async def requeue_no_show(self, token: int) -> Optional[TokenState]:
        return await self._token_action(self.client.requeue_no_show, token)
