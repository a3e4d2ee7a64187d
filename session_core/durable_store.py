"""
Durable key-value store shared by all portal instances.
Values live in kv_entries; each write is also appended to kv_changes with the writer's origin id.
Instances poll the change feed to learn about writes made elsewhere (last write wins).
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import Engine, delete, func, select

from session_core.database import make_session_factory
from session_core.models import ChangeRecord, KeyValueEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreChange:
    id: int
    key: str
    value: str | None  # None = removed
    origin: str


class DurableStore:
    def __init__(self, engine: Engine, *, origin: str | None = None):
        self._sessions = make_session_factory(engine)
        self.origin = origin or uuid.uuid4().hex
        self._listeners: list[Callable[[StoreChange], None]] = []
        self._cursor: int | None = None

    def get(self, key: str) -> str | None:
        with self._sessions() as db:
            entry = db.get(KeyValueEntry, key)
            return entry.value if entry is not None else None

    def set(self, key: str, value: str) -> None:
        """Upsert value and record the change in one transaction."""
        with self._sessions() as db:
            entry = db.get(KeyValueEntry, key)
            if entry is None:
                db.add(KeyValueEntry(key=key, value=value))
            else:
                entry.value = value
            db.add(ChangeRecord(key=key, value=value, origin=self.origin))
            db.commit()

    def remove(self, key: str) -> None:
        with self._sessions() as db:
            entry = db.get(KeyValueEntry, key)
            if entry is not None:
                db.delete(entry)
            db.add(ChangeRecord(key=key, value=None, origin=self.origin))
            db.commit()

    def subscribe(self, listener: Callable[[StoreChange], None]) -> Callable[[], None]:
        """
        Register for changes written by other origins. Returns an unsubscribe callable.
        The cursor starts at the newest change so history is not replayed.
        """
        if self._cursor is None:
            self._cursor = self._latest_change_id()
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def poll(self) -> int:
        """Dispatch changes made by other instances since the last poll. Returns how many were dispatched."""
        if self._cursor is None:
            self._cursor = self._latest_change_id()
            return 0
        with self._sessions() as db:
            latest = db.scalar(select(func.max(ChangeRecord.id))) or 0
            if latest < self._cursor:
                # Feed pruned empty, or ids restarted on a backend without monotonic ids
                logger.info("Change feed ids went back from %s to %s; resetting cursor", self._cursor, latest)
                self._cursor = 0
            rows = db.scalars(
                select(ChangeRecord).where(ChangeRecord.id > self._cursor).order_by(ChangeRecord.id)
            ).all()
            changes = [StoreChange(id=r.id, key=r.key, value=r.value, origin=r.origin) for r in rows]
        dispatched = 0
        for change in changes:
            self._cursor = change.id
            if change.origin == self.origin:
                continue
            dispatched += 1
            for listener in list(self._listeners):
                try:
                    listener(change)
                except Exception:
                    logger.exception("Store change listener failed for key %s", change.key)
        return dispatched

    def prune(self, older_than_seconds: int) -> int:
        """Delete change rows older than the given age. Returns rows removed."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
        with self._sessions() as db:
            result = db.execute(delete(ChangeRecord).where(ChangeRecord.created_at < cutoff))
            db.commit()
            return result.rowcount or 0

    def _latest_change_id(self) -> int:
        with self._sessions() as db:
            return db.scalar(select(func.max(ChangeRecord.id))) or 0
