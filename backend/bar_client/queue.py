"""
Local queue of drink issues that the ledger has not confirmed yet.

The queue is one immutable tuple of QueueEntry. Every change is a message
reduced by `reduce_queue`, and LocalQueue is the only owner of the current
tuple. It persists the whole tuple after each change.

Entry lifecycle:

    pending/failed -> syncing -> synced | failed

A synced entry stays until the bootstrap snapshot shows its remote id
(dedupe). Any entry is dropped once its session is known to be deleted or
no longer accessible (prune).
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from core.clock import Clock, system_clock

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SYNCING = "syncing"
STATUS_SYNCED = "synced"
STATUS_FAILED = "failed"
STATUSES = (STATUS_PENDING, STATUS_SYNCING, STATUS_SYNCED, STATUS_FAILED)

OFFLINE_MESSAGE = "no connection, saved locally"
STORAGE_KEY = "openbar.local_queue"


@dataclass(frozen=True)
class QueueEntry:
    local_id: str
    payload: Dict[str, Any]
    status: str
    created_at: datetime
    updated_at: datetime
    error: Optional[str] = None
    remote_id: Optional[str] = None
    label: Optional[str] = None
    # failed for lack of connectivity (retried automatically on reconnect)
    offline: bool = False

    @property
    def session_id(self) -> Optional[str]:
        value = self.payload.get("session_id")
        return str(value) if value is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_id": self.local_id,
            "payload": self.payload,
            "status": self.status,
            "error": self.error,
            "remote_id": self.remote_id,
            "label": self.label,
            "offline": self.offline,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueEntry":
        status = data.get("status")
        if status not in STATUSES:
            raise ValueError(f"Unknown queue entry status: {status!r}")
        return cls(
            local_id=str(data["local_id"]),
            payload=dict(data.get("payload") or {}),
            status=status,
            error=data.get("error"),
            remote_id=data.get("remote_id"),
            label=data.get("label"),
            offline=bool(data.get("offline")),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


# ----------------------------
# Messages
# ----------------------------

@dataclass(frozen=True)
class Enqueue:
    local_id: str
    payload: Dict[str, Any]
    online: bool
    label: Optional[str] = None


@dataclass(frozen=True)
class MarkSyncing:
    local_id: str


@dataclass(frozen=True)
class MarkResult:
    local_id: str
    remote_id: Optional[str] = None
    error: Optional[str] = None
    offline: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Dedupe:
    remote_ids: frozenset


@dataclass(frozen=True)
class Prune:
    gone_session_ids: frozenset


@dataclass(frozen=True)
class Rehydrate:
    entries: Tuple[QueueEntry, ...]


Message = Union[Enqueue, MarkSyncing, MarkResult, Dedupe, Prune, Rehydrate]


def _update(entries: Tuple[QueueEntry, ...], local_id: str, fn) -> Tuple[QueueEntry, ...]:
    return tuple(fn(e) if e.local_id == local_id else e for e in entries)


def reduce_queue(entries: Tuple[QueueEntry, ...], message: Message, now: datetime) -> Tuple[QueueEntry, ...]:
    """Next queue state. Never mutates `entries`; returns it unchanged when the message is a no-op."""
    if isinstance(message, Enqueue):
        if any(e.local_id == message.local_id for e in entries):
            return entries
        entry = QueueEntry(
            local_id=message.local_id,
            payload=dict(message.payload),
            status=STATUS_PENDING if message.online else STATUS_FAILED,
            error=None if message.online else OFFLINE_MESSAGE,
            offline=not message.online,
            label=message.label,
            created_at=now,
            updated_at=now,
        )
        return entries + (entry,)

    if isinstance(message, MarkSyncing):
        target = next((e for e in entries if e.local_id == message.local_id), None)
        # synced and syncing entries are never submitted twice
        if target is None or target.status not in (STATUS_PENDING, STATUS_FAILED):
            return entries
        return _update(
            entries,
            message.local_id,
            lambda e: replace(e, status=STATUS_SYNCING, error=None, offline=False, updated_at=now),
        )

    if isinstance(message, MarkResult):
        target = next((e for e in entries if e.local_id == message.local_id), None)
        if target is None or target.status != STATUS_SYNCING:
            return entries
        if message.ok:
            fn = lambda e: replace(e, status=STATUS_SYNCED, remote_id=message.remote_id, error=None, offline=False, updated_at=now)  # noqa: E731
        else:
            fn = lambda e: replace(e, status=STATUS_FAILED, error=message.error, offline=message.offline, updated_at=now)  # noqa: E731
        return _update(entries, message.local_id, fn)

    if isinstance(message, Dedupe):
        kept = tuple(
            e for e in entries
            if not (e.status == STATUS_SYNCED and e.remote_id is not None and str(e.remote_id) in message.remote_ids)
        )
        return entries if len(kept) == len(entries) else kept

    if isinstance(message, Prune):
        kept = tuple(e for e in entries if e.session_id not in message.gone_session_ids)
        return entries if len(kept) == len(entries) else kept

    if isinstance(message, Rehydrate):
        # nothing is in flight after a restart
        return tuple(
            replace(e, status=STATUS_PENDING) if e.status == STATUS_SYNCING else e
            for e in message.entries
        )

    raise TypeError(f"Unknown queue message: {message!r}")


class LocalQueue:
    def __init__(self, store=None, clock: Clock = system_clock) -> None:
        self.store = store
        self.clock = clock
        self._entries: Tuple[QueueEntry, ...] = ()

    @property
    def entries(self) -> Tuple[QueueEntry, ...]:
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, local_id: str) -> Optional[QueueEntry]:
        return next((e for e in self._entries if e.local_id == local_id), None)

    def dispatch(self, message: Message) -> bool:
        """Apply one message. Returns True when the queue changed."""
        next_entries = reduce_queue(self._entries, message, self.clock.now())
        if next_entries is self._entries:
            return False
        self._entries = next_entries
        self._persist()
        return True

    def _persist(self) -> None:
        if self.store is None:
            return
        self.store.set(STORAGE_KEY, [e.to_dict() for e in self._entries])

    def rehydrate(self) -> Tuple[QueueEntry, ...]:
        """Load the persisted queue. Unreadable entries are dropped."""
        raw = self.store.get(STORAGE_KEY, []) if self.store is not None else []
        loaded = []
        for item in raw if isinstance(raw, list) else []:
            try:
                loaded.append(QueueEntry.from_dict(item))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Dropping unreadable queue entry %r: %r", item, e)
        self._entries = reduce_queue(self._entries, Rehydrate(tuple(loaded)), self.clock.now())
        self._persist()
        return self._entries

    def enqueue(self, payload: Dict[str, Any], online: bool, label: Optional[str] = None) -> QueueEntry:
        local_id = str(uuid.uuid4())
        self.dispatch(Enqueue(local_id=local_id, payload=payload, online=online, label=label))
        return self.get(local_id)

    def mark_syncing(self, local_id: str) -> bool:
        """False when the entry is missing, syncing or already synced."""
        return self.dispatch(MarkSyncing(local_id))

    def mark_result(
        self,
        local_id: str,
        remote_id: Optional[str] = None,
        error: Optional[str] = None,
        offline: bool = False,
    ) -> bool:
        return self.dispatch(MarkResult(local_id=local_id, remote_id=remote_id, error=error, offline=offline))

    def dedupe(self, remote_ids: Iterable[Any]) -> bool:
        return self.dispatch(Dedupe(frozenset(str(i) for i in remote_ids)))

    def prune(self, gone_session_ids: Iterable[Any]) -> bool:
        return self.dispatch(Prune(frozenset(str(i) for i in gone_session_ids)))
