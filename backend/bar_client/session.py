"""
Session lifecycle on the terminal.

Tracks the bartender's current session from the bootstrap snapshot, answers
"can we still serve?" from `expected_end_at`, and wraps the ledger's session
transitions (create/launch, start, join, leave, close, delete).
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from bar_client.config import client_settings
from core.clock import Clock, is_session_expired, system_clock
from core.errors import PermissionDenied, SessionExpired, SessionStateError

logger = logging.getLogger(__name__)


def _parse_dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    # naive UTC, like the clock
    return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed


class SessionManager:
    def __init__(
        self,
        client,
        clock: Clock = system_clock,
        user_id=None,
        is_manager: bool = False,
        poll_interval: Optional[float] = None,
    ) -> None:
        self.client = client
        self.clock = clock
        self.user_id = str(user_id) if user_id is not None else None
        self.is_manager = is_manager
        self.poll_interval = poll_interval if poll_interval is not None else client_settings.expiry_poll_seconds
        self.current: Optional[Dict[str, Any]] = None
        self.sessions: List[Dict[str, Any]] = []
        self.joinable: List[Dict[str, Any]] = []
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []
        self._notified_session_id: Optional[str] = None

    # ----------------------------
    # State
    # ----------------------------

    def refresh(self, bootstrap: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self.sessions = list(bootstrap.get("sessions") or [])
        self.joinable = list(bootstrap.get("joinable_sessions") or [])
        self._set_current(bootstrap.get("current_user_session"))
        return self.current

    def _set_current(self, session: Optional[Dict[str, Any]]) -> None:
        self.current = session
        if session is None or str(session["id"]) != self._notified_session_id:
            self._notified_session_id = None

    @property
    def session_id(self) -> Optional[str]:
        return str(self.current["id"]) if self.current else None

    @property
    def expected_end_at(self) -> Optional[datetime]:
        return _parse_dt(self.current.get("expected_end_at")) if self.current else None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if not self.current:
            return False
        return is_session_expired(self.expected_end_at, now or self.clock.now())

    def can_issue(self, now: Optional[datetime] = None) -> bool:
        return bool(self.current) and self.current.get("status") == "active" and not self.is_expired(now)

    def guard(self) -> None:
        """Raise SessionExpired when drinks may not be served right now."""
        if not self.can_issue():
            raise SessionExpired()

    def remaining_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        end = self.expected_end_at
        if end is None:
            return None
        return max((end - (now or self.clock.now())).total_seconds(), 0.0)

    def on_expired(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        self._listeners.append(callback)

    def tick(self, now: Optional[datetime] = None) -> bool:
        """Notify listeners once per session when it crosses its end time."""
        if not self.current or not self.is_expired(now):
            return False
        if self._notified_session_id == self.session_id:
            return False
        self._notified_session_id = self.session_id
        logger.info("Session %s expired", self.session_id)
        for callback in list(self._listeners):
            callback(self.current)
        return True

    async def run_expiry_timer(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            self.tick()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    # ----------------------------
    # Transitions
    # ----------------------------

    def _known(self, session_id) -> Optional[Dict[str, Any]]:
        key = str(session_id)
        for s in [self.current, *self.sessions, *self.joinable]:
            if s and str(s["id"]) == key:
                return s
        return None

    def _target(self, session_id, action: str) -> str:
        session_id = session_id or self.session_id
        if session_id is None:
            raise SessionStateError(f"No session to {action}")
        return session_id

    def _require_manage(self, session_id, action: str) -> None:
        session = self._known(session_id)
        if session is None or self.is_manager:
            return
        if str(session.get("created_by_user_id")) != self.user_id:
            raise PermissionDenied(f"Only the creator or a manager can {action} this session")

    async def create(self, session_type_id, status: str = "draft", **fields) -> Dict[str, Any]:
        session = await asyncio.to_thread(
            self.client.create_session, session_type_id=session_type_id, status=status, **fields
        )
        self.sessions.insert(0, session)
        if session.get("status") == "active":
            self._set_current(session)
        return session

    async def launch(self, session_type_id, **fields) -> Dict[str, Any]:
        """Create straight into `active`; the creator becomes the first member."""
        return await self.create(session_type_id, status="active", **fields)

    async def start(self, session_id) -> Dict[str, Any]:
        self._require_manage(session_id, "start")
        session = await asyncio.to_thread(self.client.start_session, session_id)
        self._set_current(session)
        return session

    async def join(self, session_id) -> Dict[str, Any]:
        session = await asyncio.to_thread(self.client.join_session, session_id)
        self._set_current(session)
        return session

    async def leave(self, session_id=None) -> Dict[str, Any]:
        session_id = self._target(session_id, "leave")
        session = await asyncio.to_thread(self.client.leave_session, session_id)
        if str(session_id) == self.session_id:
            self._set_current(None)
        return session

    async def close(self, session_id=None, reconciliation: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        """Direct close, or close with counted stock: [{ingredient_id, counted_stock}]."""
        session_id = self._target(session_id, "close")
        self._require_manage(session_id, "close")
        result = await asyncio.to_thread(self.client.close_session, session_id, reconciliation)
        if str(session_id) == self.session_id:
            self._set_current(None)
        return result

    async def delete(self, session_id) -> None:
        self._require_manage(session_id, "delete")
        await asyncio.to_thread(self.client.delete_session, session_id)
        self.sessions = [s for s in self.sessions if str(s["id"]) != str(session_id)]
        if str(session_id) == self.session_id:
            self._set_current(None)
