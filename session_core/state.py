"""
Per-instance session state machine. transition() is pure; the controller owns the current value.
"""
from enum import Enum


class SessionState(str, Enum):
    LOGGED_OUT = "logged_out"
    AUTHENTICATED = "authenticated"
    WARNED = "warned"  # authenticated, idle warning showing


class SessionEvent(str, Enum):
    LOGIN = "login"
    RESTORED = "restored"  # persisted token found at startup
    REMOTE_LOGIN = "remote_login"  # another instance wrote a token while we were logged out
    TOKEN_REPLACED = "token_replaced"
    IDLE_WARNING = "idle_warning"
    WARNING_ELAPSED = "warning_elapsed"
    EXTENDED = "extended"
    EXPIRED = "expired"
    IDLE_TIMEOUT = "idle_timeout"
    LOGOUT = "logout"
    REMOTE_LOGOUT = "remote_logout"


_ANY_TO_LOGGED_OUT = {
    SessionEvent.EXPIRED,
    SessionEvent.IDLE_TIMEOUT,
    SessionEvent.LOGOUT,
    SessionEvent.REMOTE_LOGOUT,
}
_ANY_TO_AUTHENTICATED = {
    SessionEvent.LOGIN,
    SessionEvent.RESTORED,
    SessionEvent.REMOTE_LOGIN,
}

_TRANSITIONS: dict[tuple[SessionState, SessionEvent], SessionState] = {
    (SessionState.AUTHENTICATED, SessionEvent.IDLE_WARNING): SessionState.WARNED,
    (SessionState.WARNED, SessionEvent.WARNING_ELAPSED): SessionState.AUTHENTICATED,
    (SessionState.WARNED, SessionEvent.EXTENDED): SessionState.AUTHENTICATED,
}


def transition(state: SessionState, event: SessionEvent) -> SessionState:
    """Next state for event; pairs with no rule keep the current state."""
    if event in _ANY_TO_LOGGED_OUT:
        return SessionState.LOGGED_OUT
    if event in _ANY_TO_AUTHENTICATED:
        return SessionState.AUTHENTICATED
    return _TRANSITIONS.get((state, event), state)
