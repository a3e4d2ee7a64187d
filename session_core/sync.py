"""
Keeping instances consistent.

CrossInstanceSync turns writes made by other instances (token, idle timeout) into callbacks that
re-run the same local logic as local changes. LocalBroadcast is the same-process channel the core
publishes session signals on (idle warning, ended, ...) and a UI layer can publish "extend" on.
"""
import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from session_core.config import (
    CHANGE_FEED_RETENTION_SECONDS,
    EVENT_HISTORY_SIZE,
    IDLE_TIMEOUT_KEY,
    SYNC_POLL_INTERVAL_SECONDS,
)
from session_core.durable_store import DurableStore, StoreChange
from session_core.idle_monitor import parse_idle_minutes
from session_core.token_store import TokenStore

logger = logging.getLogger(__name__)

TOPIC_AUTHENTICATED = "session.authenticated"
TOPIC_ENDED = "session.ended"
TOPIC_IDLE_WARNING = "session.idle_warning"
TOPIC_WARNING_TICK = "session.warning_tick"
TOPIC_WARNING_ENDED = "session.warning_ended"
TOPIC_EXTEND_REQUESTED = "session.extend"
TOPIC_EXTENDED = "session.extended"
TOPIC_EXTEND_FAILED = "session.extend_failed"

# Signals forwarded to watch(on_explicit_event=...)
EXPLICIT_TOPICS = (TOPIC_EXTEND_REQUESTED, TOPIC_IDLE_WARNING)


class LocalBroadcast:
    """In-process pub/sub with a bounded history so a UI can poll for what it missed."""

    def __init__(self, *, buffer_size: int = EVENT_HISTORY_SIZE) -> None:
        self._events: deque[dict[str, Any]] = deque(maxlen=max(10, buffer_size))
        self._handlers: dict[str, list[Callable[[dict[str, Any]], None]]] = {}
        self._next_id = 1

    def publish(self, topic: str, **payload: Any) -> dict[str, Any]:
        event = {
            "id": self._next_id,
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "type": topic,
            "payload": payload,
        }
        self._next_id += 1
        self._events.append(event)
        for handler in list(self._handlers.get(topic, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception("Handler for %s failed", topic)
        return dict(event)

    def subscribe(self, topic: str, handler: Callable[[dict[str, Any]], None]) -> Callable[[], None]:
        self._handlers.setdefault(topic, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def snapshot(self, *, since_id: int = 0, limit: int = 100) -> dict[str, Any]:
        events = list(self._events)
        latest_id = self._next_id - 1
        oldest_id = events[0]["id"] if events else latest_id + 1
        filtered = [event for event in events if event["id"] > since_id]
        if limit > 0 and len(filtered) > limit:
            filtered = filtered[-limit:]
        return {
            "events": filtered,
            "latest_id": latest_id,
            "oldest_id": oldest_id,
            "overflowed": since_id < (oldest_id - 1),
        }


class CrossInstanceSync:
    def __init__(
        self,
        store: DurableStore,
        tokens: TokenStore,
        broadcast: LocalBroadcast,
        *,
        idle_timeout_key: str = IDLE_TIMEOUT_KEY,
    ):
        self._store = store
        self._tokens = tokens
        self._broadcast = broadcast
        self._idle_timeout_key = idle_timeout_key
        self._unsubscribers: list[Callable[[], None]] = []
        self.degraded = False

    def watch(
        self,
        *,
        on_config_changed: Callable[[float], None],
        on_token_changed: Callable[[str | None], None],
        on_explicit_event: Callable[[str, dict[str, Any]], None] | None = None,
    ) -> bool:
        """
        Start delivering changes from other instances. Returns False when the store's change
        channel is unavailable; the session then runs single-instance, nothing is raised.
        """
        self.close()
        if on_explicit_event is not None:
            for topic in EXPLICIT_TOPICS:
                self._unsubscribers.append(
                    self._broadcast.subscribe(topic, lambda payload, t=topic: on_explicit_event(t, payload))
                )

        def _on_config_change(change: StoreChange) -> None:
            if change.key == self._idle_timeout_key:
                on_config_changed(parse_idle_minutes(change.value))

        try:
            self._unsubscribers.append(self._tokens.subscribe_external(on_token_changed))
            self._unsubscribers.append(self._store.subscribe(_on_config_change))
        except SQLAlchemyError as e:
            logger.warning("Cross-instance sync unavailable; running single-instance: %s", e)
            self.degraded = True
            return False
        self.degraded = False
        return True

    def poll_once(self) -> int:
        """Deliver pending changes from other instances. Storage errors are logged, not raised."""
        try:
            delivered = self._store.poll()
        except SQLAlchemyError as e:
            if not self.degraded:
                logger.warning("Cross-instance poll failed; continuing single-instance: %s", e)
            self.degraded = True
            return 0
        if self.degraded:
            logger.info("Cross-instance sync restored")
        self.degraded = False
        return delivered

    async def run(self, interval: float = SYNC_POLL_INTERVAL_SECONDS) -> None:
        """Poll forever (until cancelled), pruning the change feed now and then."""
        polls = 0
        while True:
            await asyncio.sleep(interval)
            self.poll_once()
            polls += 1
            if polls % 600 == 0:
                try:
                    self._store.prune(CHANGE_FEED_RETENTION_SECONDS)
                except SQLAlchemyError as e:
                    logger.warning("Change feed prune failed: %s", e)

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
