"""
Sync engine: moves queued drink issues to the ledger and keeps the local
queue consistent with the bootstrap snapshot.

Runs on one asyncio loop. Ledger calls are blocking `requests` calls and go
through `asyncio.to_thread`.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Set

from bar_client.api import ApiError
from bar_client.config import client_settings
from bar_client.queue import (
    OFFLINE_MESSAGE,
    STATUS_FAILED,
    STATUS_PENDING,
    LocalQueue,
    QueueEntry,
)
from core.clock import Clock, system_clock
from core.errors import ConnectivityFailure, OpenBarError, PermissionDenied, sanitize_message

logger = logging.getLogger(__name__)

SCOPE_KEY = "openbar.issue_scope"
SEEN_SESSIONS_KEY = "openbar.seen_sessions"
SCOPE_MINE = "mine"
SCOPE_ALL = "all"

REFRESH_EVENTS = ("drink_issue_created", "drink_issue_deleted")

SOURCE_LOCAL = "local"
SOURCE_BOTH = "both"
SOURCE_REMOTE = "remote"


@dataclass(frozen=True)
class MergedIssue:
    """One row of the session drink list: a queue entry, a ledger issue, or both."""

    source: str
    local: Optional[QueueEntry] = None
    remote: Optional[Dict[str, Any]] = None

    @property
    def id(self) -> str:
        if self.remote is not None:
            return str(self.remote["id"])
        return self.local.local_id


class SyncEngine:
    def __init__(
        self,
        client,
        queue: LocalQueue,
        store=None,
        clock: Clock = system_clock,
        online: bool = True,
        user_id=None,
        is_manager: bool = False,
        debounce_seconds: Optional[float] = None,
    ) -> None:
        self.client = client
        self.queue = queue
        self.store = store
        self.clock = clock
        self.online = online
        self.user_id = str(user_id) if user_id is not None else None
        self.is_manager = is_manager
        if debounce_seconds is None:
            debounce_seconds = client_settings.refresh_debounce_ms / 1000
        self.debounce_seconds = debounce_seconds
        self.snapshot: Dict[str, Any] = {}
        # business date of the session being served; refreshes ask for it after midnight too
        self.business_date: Optional[str] = None
        self._seen_sessions: Set[str] = set(store.get(SEEN_SESSIONS_KEY, []) or []) if store is not None else set()
        self._tasks: Set[asyncio.Task] = set()
        self._refresh_timer: Optional[asyncio.Task] = None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait until no sync or refresh task is left."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ----------------------------
    # Submission
    # ----------------------------

    async def queue_drink_issue(self, payload: Dict[str, Any], label: Optional[str] = None) -> QueueEntry:
        """
        Record the drink locally and, when online, start submitting it.
        Returns the entry as queued; the submission finishes in the background.
        """
        entry = self.queue.enqueue(payload, online=self.online, label=label)
        if self.online:
            self._spawn(self.sync_entry(entry.local_id))
        else:
            logger.info("Offline: drink %s saved locally", entry.local_id)
        return entry

    async def sync_entry(self, local_id: str, allow_inactive_session: bool = False) -> Optional[QueueEntry]:
        """
        Submit one entry. Entries already syncing or synced are left alone,
        so duplicate triggers never create a second ledger issue.
        """
        if not self.queue.mark_syncing(local_id):
            return self.queue.get(local_id)

        entry = self.queue.get(local_id)
        payload = dict(entry.payload)
        # the ledger applies a client_ref once, so resending after a lost response is safe
        payload.setdefault("client_ref", local_id)
        payload.setdefault("issued_at", entry.created_at.isoformat())
        if allow_inactive_session:
            payload["allow_inactive_session"] = True

        try:
            result = await asyncio.to_thread(self.client.create_drink_issue, payload)
            remote_id = str(result["issue"]["id"])
        except ConnectivityFailure:
            self.queue.mark_result(local_id, error=OFFLINE_MESSAGE, offline=True)
        except OpenBarError as e:
            logger.info("Drink %s rejected: %s", local_id, e)
            self.queue.mark_result(local_id, error=sanitize_message(str(e)))
        except Exception as e:
            logger.exception("Drink %s sync failed", local_id)
            self.queue.mark_result(local_id, error=sanitize_message(str(e)))
        else:
            self.queue.mark_result(local_id, remote_id=remote_id)
        return self.queue.get(local_id)

    async def set_online(self, online: bool) -> List[QueueEntry]:
        """
        Connectivity changed. On reconnect every pending entry and every entry
        that failed for lack of connection is submitted again.
        """
        was_online, self.online = self.online, online
        if not online or was_online:
            return []
        to_retry = [
            e.local_id
            for e in self.queue.entries
            if e.status == STATUS_PENDING or (e.status == STATUS_FAILED and e.offline)
        ]
        if to_retry:
            logger.info("Back online, retrying %d drink(s)", len(to_retry))
        results = await asyncio.gather(*(self.sync_entry(local_id) for local_id in to_retry))
        return [e for e in results if e is not None]

    async def retry_all_failed(self, allow_inactive_session: bool = False) -> List[QueueEntry]:
        """Resubmit failed entries one at a time, oldest first."""
        if allow_inactive_session and not self.is_manager:
            raise PermissionDenied("Only managers can submit into an inactive session")
        failed = [e.local_id for e in self.queue.entries if e.status == STATUS_FAILED]
        results = []
        for local_id in failed:
            entry = await self.sync_entry(local_id, allow_inactive_session=allow_inactive_session)
            if entry is not None:
                results.append(entry)
        return results

    # ----------------------------
    # Authoritative state
    # ----------------------------

    async def refresh(self, business_date: Optional[date] = None) -> Dict[str, Any]:
        """
        Fetch the bootstrap for `business_date`, or for the date of the session
        being served, then reconcile the queue with it.
        """
        snapshot = await asyncio.to_thread(
            self.client.get_bootstrap, business_date=business_date or self.business_date
        )
        missing = self.apply_bootstrap(snapshot)
        if missing:
            await self.prune_gone_sessions(missing)
        return snapshot

    def apply_bootstrap(self, snapshot: Dict[str, Any]) -> Set[str]:
        """
        Drop synced entries the ledger now lists and remember which sessions
        are visible. Nothing else is dropped here: a session can be missing
        from the snapshot only because of its date or the session limit.

        Returns the ids of sessions that have queued entries, were visible in
        an earlier snapshot and are missing from this one.
        """
        self.snapshot = snapshot
        self.queue.dedupe(str(i["id"]) for i in snapshot.get("session_issues") or [])

        visible = {str(s["id"]) for s in snapshot.get("sessions") or []}
        visible.update(str(s["id"]) for s in snapshot.get("joinable_sessions") or [])
        current = snapshot.get("current_user_session")
        if current:
            visible.add(str(current["id"]))
            self.business_date = current.get("business_date") or self.business_date
        else:
            self.business_date = None

        queued = {e.session_id for e in self.queue.entries if e.session_id is not None}
        missing = (queued & self._seen_sessions) - visible
        self._remember_sessions((queued & self._seen_sessions) | visible)
        return missing

    def _remember_sessions(self, session_ids: Set[str]) -> None:
        if session_ids == self._seen_sessions:
            return
        self._seen_sessions = set(session_ids)
        if self.store is not None:
            self.store.set(SEEN_SESSIONS_KEY, sorted(self._seen_sessions))

    async def prune_gone_sessions(self, session_ids) -> Set[str]:
        """
        Ask the ledger about each session and drop the queued entries of those
        that are deleted or no longer accessible. Sessions that cannot be
        checked (offline, server error) keep their entries.
        """
        gone: Set[str] = set()
        for session_id in sorted(session_ids):
            try:
                await asyncio.to_thread(self.client.get_session, session_id)
            except PermissionDenied:
                gone.add(session_id)
            except ApiError as e:
                if e.status_code == 404:
                    gone.add(session_id)
                else:
                    logger.warning("Could not check session %s: %s", session_id, e)
            except OpenBarError as e:
                logger.info("Could not check session %s: %s", session_id, e)
        if gone:
            logger.info("Dropping queued drinks of %d gone session(s)", len(gone))
            self.queue.prune(gone)
            self._remember_sessions(self._seen_sessions - gone)
        return gone

    @property
    def scope(self) -> str:
        if self.store is None:
            return SCOPE_MINE
        value = self.store.get(SCOPE_KEY, SCOPE_MINE)
        return value if value in (SCOPE_MINE, SCOPE_ALL) else SCOPE_MINE

    def set_scope(self, scope: str) -> str:
        if scope not in (SCOPE_MINE, SCOPE_ALL):
            raise ValueError(f"scope must be '{SCOPE_MINE}' or '{SCOPE_ALL}'")
        if self.store is not None:
            self.store.set(SCOPE_KEY, scope)
        return scope

    def merged_issues(self, session_id=None) -> List[MergedIssue]:
        """
        The drink list of a session:
        - local: queued, not confirmed by the ledger yet
        - both: synced and also present in the snapshot (about to be deduped)
        - remote: only in the snapshot (older drinks, other bartenders)
        With scope "mine", remote-only rows of other bartenders are hidden.
        """
        session_key = str(session_id) if session_id is not None else None
        remote_issues = [
            i for i in self.snapshot.get("session_issues") or []
            if session_key is None or str(i.get("session_id")) == session_key
        ]
        remote_by_id = {str(i["id"]): i for i in remote_issues}

        merged: List[MergedIssue] = []
        matched: Set[str] = set()
        for entry in sorted(self.queue.entries, key=lambda e: e.created_at, reverse=True):
            if session_key is not None and entry.session_id != session_key:
                continue
            remote = remote_by_id.get(str(entry.remote_id)) if entry.remote_id else None
            if remote is not None:
                matched.add(str(entry.remote_id))
                merged.append(MergedIssue(SOURCE_BOTH, local=entry, remote=remote))
            else:
                merged.append(MergedIssue(SOURCE_LOCAL, local=entry))

        show_all = self.scope == SCOPE_ALL
        for issue in remote_issues:
            if str(issue["id"]) in matched:
                continue
            if not show_all and self.user_id is not None and str(issue.get("issued_by_user_id")) != self.user_id:
                continue
            merged.append(MergedIssue(SOURCE_REMOTE, remote=issue))
        return merged

    # ----------------------------
    # Push events
    # ----------------------------

    def handle_push_event(self, event: str, data: Any = None) -> bool:
        """
        Schedule a bootstrap refresh for drink events. Bursts collapse into one
        refresh `debounce_seconds` after the last event. Must run on the loop.
        """
        if event not in REFRESH_EVENTS:
            return False
        if self._refresh_timer is not None and not self._refresh_timer.done():
            self._refresh_timer.cancel()
        self._refresh_timer = self._spawn(self._refresh_later())
        return True

    async def _refresh_later(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        # once the delay is over the refresh runs on its own task, later events cannot cancel it
        self._spawn(self._refresh_logged())

    async def _refresh_logged(self) -> None:
        try:
            await self.refresh()
        except OpenBarError as e:
            logger.warning("Bootstrap refresh after push event failed: %s", e)
