"""
Current bearer token: persisted in the durable store, mirrored in memory.
Single source of truth for "am I logged in" within an instance.
"""
import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from session_core.config import TOKEN_KEY
from session_core.durable_store import DurableStore, StoreChange

logger = logging.getLogger(__name__)


class TokenStore:
    def __init__(self, store: DurableStore, *, key: str = TOKEN_KEY):
        self._store = store
        self._key = key
        self._listeners: list[Callable[[str | None], None]] = []
        self._token: str | None = None
        self.reload()

    @property
    def key(self) -> str:
        return self._key

    def get(self) -> str | None:
        return self._token

    def reload(self) -> str | None:
        """Re-read the persisted token (startup restore). Keeps the mirror if storage is unreadable."""
        try:
            self._token = self._store.get(self._key)
        except SQLAlchemyError as e:
            logger.warning("Could not read persisted token; keeping in-memory value: %s", e)
        return self._token

    def set(self, token: str) -> None:
        try:
            self._store.set(self._key, token)
        except SQLAlchemyError as e:
            logger.warning("Token not persisted (storage unavailable); other instances will not see it: %s", e)
        self._token = token
        self._notify(token)

    def clear(self) -> None:
        try:
            self._store.remove(self._key)
        except SQLAlchemyError as e:
            logger.warning("Persisted token not removed (storage unavailable): %s", e)
        self._token = None
        self._notify(None)

    def subscribe(self, listener: Callable[[str | None], None]) -> Callable[[], None]:
        """Local listeners, called synchronously on set/clear in this instance."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def subscribe_external(self, on_change: Callable[[str | None], None]) -> Callable[[], None]:
        """Changes to the token written by other instances. The mirror is updated before on_change runs."""

        def _on_store_change(change: StoreChange) -> None:
            if change.key != self._key:
                return
            self._token = change.value
            on_change(change.value)

        return self._store.subscribe(_on_store_change)

    def _notify(self, token: str | None) -> None:
        for listener in list(self._listeners):
            listener(token)
