"""
SessionController: the one object the rest of the portal talks to about the session.

Owns the token store, the expiry and idle timers and the cross-instance sync; every token or
config change, local or from another instance, goes through the same re-arming code.
Construct one per running application and pass it to whoever needs it.
"""
import asyncio
import json
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from session_core.claims import Claims, decode
from session_core.clock import Clock, LoopClock
from session_core.collaborators import InvalidateServerSide, RefreshCredential
from session_core.config import DEFAULT_IDLE_TIMEOUT_MINUTES, IDLE_TIMEOUT_KEY, USER_KEY
from session_core.durable_store import DurableStore
from session_core.expiry import ExpiryScheduler
from session_core.idle_monitor import IdleMonitor, WarningState, parse_idle_minutes, start_idle_monitor
from session_core.state import SessionEvent, SessionState, transition
from session_core.sync import (
    TOPIC_AUTHENTICATED,
    TOPIC_ENDED,
    TOPIC_EXTEND_FAILED,
    TOPIC_EXTEND_REQUESTED,
    TOPIC_EXTENDED,
    TOPIC_IDLE_WARNING,
    TOPIC_WARNING_ENDED,
    TOPIC_WARNING_TICK,
    CrossInstanceSync,
    LocalBroadcast,
)
from session_core.token_store import TokenStore

logger = logging.getLogger(__name__)


class SessionController:
    def __init__(
        self,
        store: DurableStore,
        *,
        clock: Clock | None = None,
        refresh_credential: RefreshCredential | None = None,
        invalidate_server_side: InvalidateServerSide | None = None,
        broadcast: LocalBroadcast | None = None,
        token_store: TokenStore | None = None,
        idle_timeout_key: str = IDLE_TIMEOUT_KEY,
    ):
        self._store = store
        self._clock = clock or LoopClock()
        self._refresh = refresh_credential
        self._invalidate = invalidate_server_side
        self.broadcast = broadcast or LocalBroadcast()
        self._tokens = token_store or TokenStore(store)
        self._idle_timeout_key = idle_timeout_key
        self.sync = CrossInstanceSync(store, self._tokens, self.broadcast, idle_timeout_key=idle_timeout_key)
        self._expiry = ExpiryScheduler(self._clock)
        self._idle: IdleMonitor | None = None
        self._idle_minutes = DEFAULT_IDLE_TIMEOUT_MINUTES
        self._claims: Claims | None = None
        self._state = SessionState.LOGGED_OUT
        self._extend_tasks: set[asyncio.Task] = set()

    # --- read side -------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state is not SessionState.LOGGED_OUT

    @property
    def token(self) -> str | None:
        return self._tokens.get()

    @property
    def claims(self) -> Claims | None:
        return self._claims

    @property
    def subject(self) -> Claims | None:
        """Current subject (id, role) or None when logged out or the token payload is unreadable."""
        return self._claims if self.is_authenticated else None

    @property
    def warning(self) -> WarningState:
        return self._idle.warning if self._idle is not None else WarningState()

    @property
    def idle_timeout_minutes(self) -> float:
        return self._idle_minutes

    def snapshot(self) -> dict[str, Any]:
        subject = self.subject
        warning = self.warning
        return {
            "state": self._state.value,
            "subject": {"id": subject.subject_id, "role": subject.role} if subject else None,
            "expires_at": subject.expires_at if subject else None,
            "idle_timeout_minutes": self._idle_minutes,
            "warning": {"active": warning.active, "remaining_ms": warning.remaining_ms},
        }

    # --- lifecycle -------------------------------------------------------

    def start(self) -> SessionState:
        """Restore persisted config and token, then start following other instances."""
        self._idle_minutes = self._read_idle_timeout()
        token = self._tokens.reload()
        if token:
            self._activate(token, SessionEvent.RESTORED)
        self.sync.watch(
            on_config_changed=self._apply_idle_timeout,
            on_token_changed=self._on_remote_token,
            on_explicit_event=self._on_explicit_event,
        )
        return self._state

    def close(self) -> None:
        """Stop timers and listeners without touching the persisted session."""
        self.sync.close()
        self._teardown_timers()
        for task in list(self._extend_tasks):
            task.cancel()

    # --- operations ------------------------------------------------------

    def login(self, token: str) -> SessionState:
        self._tokens.set(token)
        self._activate(token, SessionEvent.LOGIN)
        self._persist_user()
        return self._state

    async def logout(self) -> None:
        """Server-side invalidation is best effort; local logout always happens."""
        if self._invalidate is not None and self._state is not SessionState.LOGGED_OUT:
            try:
                await self._invalidate()
            except Exception as e:
                logger.warning("Server-side logout failed, logging out locally anyway: %s", e)
        self._end_session(SessionEvent.LOGOUT)

    def replace_token(self, token: str) -> bool:
        """Swap in a refreshed token: re-arms expiry only, the idle clock is left alone."""
        if self._state is SessionState.LOGGED_OUT:
            logger.warning("replace_token called while logged out; ignoring")
            return False
        self._tokens.set(token)
        self._adopt(token)
        self._persist_user()
        self._set_state(SessionEvent.TOKEN_REPLACED)
        return True

    async def refresh_and_extend(self) -> bool:
        """
        Ask for a new token and, on success, clear any idle warning and restart the idle window.
        A failed refresh changes nothing; the running timers decide what happens next.
        """
        if self._state is SessionState.LOGGED_OUT or self._refresh is None:
            return False
        try:
            token = await self._refresh()
        except Exception as e:
            logger.warning("Token refresh raised: %s", e)
            token = None
        if not token:
            self.broadcast.publish(TOPIC_EXTEND_FAILED)
            return False
        if self._state is SessionState.LOGGED_OUT:
            logger.info("Session ended while refresh was pending; discarding new token")
            return False
        self.replace_token(token)
        if self._idle is not None:
            self._idle.extend()
        self._set_state(SessionEvent.EXTENDED)
        self.broadcast.publish(TOPIC_EXTENDED, expires_at=self._claims.expires_at if self._claims else None)
        logger.info("Session extended")
        return True

    extend_session = refresh_and_extend

    def dismiss_warning(self) -> bool:
        """Hide the idle warning without extending; the idle deadline stands."""
        if self._idle is None:
            return False
        return self._idle.dismiss_warning()

    def touch(self) -> None:
        if self._idle is not None:
            self._idle.touch()

    def record_activity(self, kind: str, visible: bool | None = None) -> bool:
        if self._idle is None:
            return False
        return self._idle.handle_event(kind, visible=visible)

    def set_idle_timeout(self, minutes) -> float:
        """Persist a new idle timeout (other instances pick it up) and apply it here."""
        minutes = parse_idle_minutes(minutes)
        try:
            self._store.set(self._idle_timeout_key, str(minutes))
        except SQLAlchemyError as e:
            logger.warning("Idle timeout not persisted (storage unavailable): %s", e)
        self._apply_idle_timeout(minutes)
        return minutes

    # --- internals -------------------------------------------------------

    def _set_state(self, event: SessionEvent) -> SessionState:
        previous = self._state
        self._state = transition(previous, event)
        if self._state is not previous:
            logger.info("Session %s -> %s (%s)", previous.value, self._state.value, event.value)
        return self._state

    def _read_idle_timeout(self) -> float:
        try:
            raw = self._store.get(self._idle_timeout_key)
        except SQLAlchemyError as e:
            logger.warning("Could not read idle timeout; using default: %s", e)
            return DEFAULT_IDLE_TIMEOUT_MINUTES
        if raw is None:
            return DEFAULT_IDLE_TIMEOUT_MINUTES
        return parse_idle_minutes(raw)

    def _adopt(self, token: str) -> None:
        """Derive claims from token and re-arm the expiry timer."""
        self._claims = decode(token)
        if self._claims is None:
            logger.warning("Token payload unreadable; no expiry timer armed")
        self._expiry.arm(self._claims, self._on_expired)

    def _persist_user(self) -> None:
        if self._claims is None or self._claims.subject_id is None:
            return
        user = {"id": self._claims.subject_id, "role": self._claims.role}
        try:
            self._store.set(USER_KEY, json.dumps(user))
        except SQLAlchemyError as e:
            logger.warning("User not persisted (storage unavailable): %s", e)

    def _activate(self, token: str, event: SessionEvent) -> None:
        self._adopt(token)
        if self._idle is not None:
            self._idle.dispose()
        self._idle = start_idle_monitor(
            self._clock,
            self._idle_minutes,
            on_warning=self._on_idle_warning,
            on_forced_logout=self._on_idle_timeout,
            on_tick=self._on_warning_tick,
            on_warning_end=self._on_warning_end,
        )
        self._set_state(event)
        subject = self.subject
        self.broadcast.publish(
            TOPIC_AUTHENTICATED,
            subject_id=subject.subject_id if subject else None,
            role=subject.role if subject else None,
        )

    def _teardown_timers(self) -> None:
        self._expiry.disarm()
        if self._idle is not None:
            self._idle.dispose()
            self._idle = None

    def _end_session(self, event: SessionEvent, *, clear_store: bool = True) -> None:
        was_authenticated = self.is_authenticated
        self._teardown_timers()
        if clear_store:
            self._tokens.clear()
            try:
                self._store.remove(USER_KEY)
            except SQLAlchemyError as e:
                logger.warning("Persisted user not removed (storage unavailable): %s", e)
        self._claims = None
        self._set_state(event)
        if was_authenticated:
            self.broadcast.publish(TOPIC_ENDED, reason=event.value)

    def _apply_idle_timeout(self, minutes: float) -> None:
        self._idle_minutes = minutes
        if self._idle is not None:
            self._idle.reconfigure(minutes)

    def _on_expired(self) -> None:
        if self._state is not SessionState.LOGGED_OUT:
            self._end_session(SessionEvent.EXPIRED)

    def _on_idle_timeout(self) -> None:
        if self._state is not SessionState.LOGGED_OUT:
            self._end_session(SessionEvent.IDLE_TIMEOUT)

    def _on_idle_warning(self, remaining_ms: int) -> None:
        self._set_state(SessionEvent.IDLE_WARNING)
        self.broadcast.publish(TOPIC_IDLE_WARNING, remaining_ms=remaining_ms)

    def _on_warning_tick(self, remaining_ms: int) -> None:
        self.broadcast.publish(TOPIC_WARNING_TICK, remaining_ms=remaining_ms)

    def _on_warning_end(self) -> None:
        self._set_state(SessionEvent.WARNING_ELAPSED)
        self.broadcast.publish(TOPIC_WARNING_ENDED)

    def _on_remote_token(self, token: str | None) -> None:
        if not token:
            if self._state is not SessionState.LOGGED_OUT:
                logger.info("Token cleared by another instance")
                self._end_session(SessionEvent.REMOTE_LOGOUT, clear_store=False)
            return
        if self._state is SessionState.LOGGED_OUT:
            self._activate(token, SessionEvent.REMOTE_LOGIN)
        else:
            self._adopt(token)
            self._set_state(SessionEvent.TOKEN_REPLACED)

    def _on_explicit_event(self, topic: str, payload: dict[str, Any]) -> None:
        if topic != TOPIC_EXTEND_REQUESTED:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Extend requested outside the event loop; ignoring")
            return
        task = loop.create_task(self.refresh_and_extend())
        self._extend_tasks.add(task)
        task.add_done_callback(self._extend_tasks.discard)
