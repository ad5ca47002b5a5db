"""Session event stream subscriber. Feeds push events into the sync engine's loop."""

import asyncio
import logging
import threading
from typing import Optional

from bar_client.sync import SCOPE_ALL
from core.errors import OpenBarError

logger = logging.getLogger(__name__)


class EventStreamSubscriber:
    """
    Reads `client.stream_events(session_id)` in a daemon thread and hands each
    event to `engine.handle_push_event` on `loop`. Reconnects after
    `reconnect_seconds` when the stream drops, until `stop()`.
    """

    def __init__(self, client, engine, loop: asyncio.AbstractEventLoop, reconnect_seconds: float = 3.0) -> None:
        self.client = client
        self.engine = engine
        self.loop = loop
        self.reconnect_seconds = reconnect_seconds
        self.session_id = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, session_id) -> None:
        if self.running and str(self.session_id) == str(session_id):
            return
        self.stop()
        self.session_id = session_id
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            args=(session_id, self._stop),
            name=f"openbar-events-{session_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and timeout is not None:
            thread.join(timeout)

    def sync_with_scope(self, session_id) -> bool:
        """Subscribed only while the engine shows every bartender's drinks."""
        if session_id is not None and self.engine.scope == SCOPE_ALL:
            self.start(session_id)
            return True
        self.stop()
        return False

    def dispatch(self, event: str, data) -> None:
        self.loop.call_soon_threadsafe(self.engine.handle_push_event, event, data)

    def _run(self, session_id, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                for event, data in self.client.stream_events(session_id):
                    if stop.is_set():
                        break
                    if event == "connected":
                        logger.debug("Event stream connected for session %s", session_id)
                        continue
                    self.dispatch(event, data)
            except OpenBarError as e:
                logger.info("Event stream for session %s dropped: %s", session_id, e)
            if stop.wait(self.reconnect_seconds):
                break
