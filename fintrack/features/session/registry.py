"""
In-process registry of HTTP sessions.

Maps opaque session ids (sent by clients as X-Session-Id) to their
SessionController. Controllers are created signed out; shutdown closes all
of them so no poll task outlives the app.

Per-session local state is dropped when the session is discarded. The
renewal prompt debounce date lives in a per-user store instead, so it
survives sign-out and sign-in on the same day.
"""
import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from fintrack.core.config import settings
from fintrack.core.errors import NotFoundError
from fintrack.features.auth.provider import AuthProvider, auth_provider
from fintrack.features.entitlements.store import ProfileStore, profile_store
from fintrack.features.session.controller import SessionController
from fintrack.features.session.local_store import JsonFileLocalStore, LocalStore, MemoryLocalStore

logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(
        self,
        *,
        store: Optional[ProfileStore] = None,
        auth: Optional[AuthProvider] = None,
        poll: Optional[bool] = None,
        settings_obj=None,
        time_fn: Optional[Callable[[], float]] = None,
    ):
        self._settings = settings_obj or settings
        self.store = store or profile_store
        self.auth = auth or auth_provider
        self.poll = self._settings.SESSION_POLL_ENABLED if poll is None else poll
        self._time_fn = time_fn or time.monotonic
        self._idle_ttl = float(getattr(self._settings, "SESSION_IDLE_TTL_SECONDS", 0) or 0)
        self._sessions: Dict[str, SessionController] = {}
        self._last_seen: Dict[str, float] = {}
        self._user_stores: Dict[str, LocalStore] = {}

    def _state_dir(self) -> Optional[Path]:
        state_dir = getattr(self._settings, "LOCAL_STATE_DIR", None)
        return Path(state_dir) if state_dir else None

    def _local_store_for(self, session_id: str) -> LocalStore:
        state_dir = self._state_dir()
        if state_dir:
            return JsonFileLocalStore(state_dir / f"{session_id}.json")
        return MemoryLocalStore()

    def user_store(self, user_id: str) -> LocalStore:
        """Local state shared by every session of one user."""
        store = self._user_stores.get(user_id)
        if store is None:
            state_dir = self._state_dir()
            if state_dir:
                store = JsonFileLocalStore(state_dir / "users" / f"{user_id}.json")
            else:
                store = MemoryLocalStore()
            self._user_stores[user_id] = store
        return store

    def create(self) -> SessionController:
        session_id = uuid4().hex
        controller = SessionController(
            self.store,
            self.auth,
            self._local_store_for(session_id),
            settings_obj=self._settings,
            poll=self.poll,
            session_id=session_id,
            user_store=self.user_store,
        )
        self._sessions[controller.session_id] = controller
        self._last_seen[controller.session_id] = self._time_fn()
        logger.debug("[sessions] created", extra={"session_id": controller.session_id})
        return controller

    def get(self, session_id: Optional[str]) -> SessionController:
        controller = self.find(session_id)
        if controller is None:
            raise NotFoundError("Unknown session", code="session_not_found")
        return controller

    def find(self, session_id: Optional[str]) -> Optional[SessionController]:
        controller = self._sessions.get(session_id) if session_id else None
        if controller is not None:
            self._last_seen[session_id] = self._time_fn()
        return controller

    async def discard(self, session_id: str) -> None:
        controller = self._sessions.pop(session_id, None)
        self._last_seen.pop(session_id, None)
        if controller is not None:
            await controller.close()
            controller.local.clear()

    def idle_sessions(self) -> List[str]:
        """Ids not seen for SESSION_IDLE_TTL_SECONDS (never, when the TTL is 0)."""
        if self._idle_ttl <= 0:
            return []
        cutoff = self._time_fn() - self._idle_ttl
        return [session_id for session_id, seen in self._last_seen.items() if seen <= cutoff]

    async def prune(self) -> int:
        """Discard idle sessions, including forced sign-outs nobody came back for."""
        stale = self.idle_sessions()
        for session_id in stale:
            await self.discard(session_id)
        if stale:
            logger.info("[sessions] pruned idle", extra={"count": len(stale)})
        return len(stale)

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        self._last_seen.clear()
        for controller in sessions:
            await controller.close()
        if sessions:
            logger.info("[sessions] closed", extra={"count": len(sessions)})

    def __len__(self) -> int:
        return len(self._sessions)


session_registry = SessionRegistry()


def get_session_registry() -> SessionRegistry:
    """FastAPI dependency; tests override it with a non-polling registry."""
    return session_registry
