"""
Inactivity tracking: idle warning one minute before the deadline, then a forced logout.

Activity (pointer, keys, touch, scroll, tab becoming visible again) re-arms both timers.
An idle warning that is already showing is NOT dismissed by plain activity: its countdown
runs to zero on its own schedule unless the session is explicitly extended (extend()) or
ends. Only the underlying timers are re-armed, so the forced logout no longer happens.
"""
import logging
import math
from dataclasses import dataclass
from typing import Callable

from session_core.clock import Clock, Timer
from session_core.config import (
    IDLE_COUNTDOWN_TICK_SECONDS,
    IDLE_LOGOUT_SLACK_SECONDS,
    IDLE_WARNING_LEAD_SECONDS,
)

logger = logging.getLogger(__name__)

ACTIVITY_EVENTS = frozenset(
    {"mousemove", "mousedown", "pointermove", "pointerdown", "keydown", "touchstart", "scroll", "wheel"}
)
VISIBILITY_EVENT = "visibilitychange"


def parse_idle_minutes(value) -> float:
    """Idle timeout from settings/store text. Anything unusable (negative, NaN, garbage) means disabled (0)."""
    if isinstance(value, bool):
        return 0.0
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(minutes) or minutes <= 0:
        return 0.0
    return minutes


@dataclass
class WarningState:
    active: bool = False
    remaining_ms: int = 0


class IdleMonitor:
    def __init__(
        self,
        clock: Clock,
        *,
        on_warning: Callable[[int], None],
        on_forced_logout: Callable[[], None],
        on_tick: Callable[[int], None] | None = None,
        on_warning_end: Callable[[], None] | None = None,
        lead_seconds: float = IDLE_WARNING_LEAD_SECONDS,
        tick_seconds: float = IDLE_COUNTDOWN_TICK_SECONDS,
        slack_seconds: float = IDLE_LOGOUT_SLACK_SECONDS,
    ):
        self._clock = clock
        self._on_warning = on_warning
        self._on_forced_logout = on_forced_logout
        self._on_tick = on_tick
        self._on_warning_end = on_warning_end
        self._lead = lead_seconds
        self._tick = tick_seconds
        self._slack = slack_seconds
        self._window = 0.0
        self._warning_timer: Timer | None = None
        self._logout_timer: Timer | None = None
        self._countdown_timer: Timer | None = None
        self._disposed = False
        self._generation = 0  # bumped on every re-arm
        self.last_activity_at: float | None = None
        self.warning = WarningState()

    @property
    def enabled(self) -> bool:
        return self._window > 0 and not self._disposed

    @property
    def window_seconds(self) -> float:
        return self._window

    @property
    def live_timers(self) -> int:
        """Armed warning/forced-logout timers (the countdown is not counted)."""
        return sum(1 for t in (self._warning_timer, self._logout_timer) if t is not None)

    def touch(self) -> None:
        if not self.enabled:
            return
        self._arm()

    def reconfigure(self, minutes) -> None:
        """Apply a new idle timeout (local settings change or one seen from another instance)."""
        if self._disposed:
            return
        self._window = parse_idle_minutes(minutes) * 60
        if self._window <= 0:
            self._cancel_timers()
            self._end_warning(notify=True)
            logger.info("Idle monitoring disabled")
            return
        self._arm()

    def handle_event(self, kind: str, *, visible: bool | None = None) -> bool:
        """
        Route a UI activity signal. Returns True if it counted as activity.
        visibilitychange counts only when the application became visible again.
        """
        if kind == VISIBILITY_EVENT:
            if visible is not True:
                return False
        elif kind not in ACTIVITY_EVENTS:
            return False
        if not self.enabled:
            return False
        self.touch()
        return True

    def extend(self) -> None:
        """Explicit extension: clear the warning and restart the idle window."""
        self._end_warning(notify=False)
        self.touch()

    def dismiss_warning(self) -> bool:
        """Hide the warning without extending. Timers are untouched, so the forced logout still comes."""
        if not self.warning.active:
            return False
        self._end_warning(notify=True)
        return True

    def dispose(self) -> None:
        self._cancel_timers()
        self._end_warning(notify=False)
        self._disposed = True

    def _arm(self) -> None:
        self._cancel_timers()
        self.last_activity_at = self._clock.now()
        self._generation += 1
        generation = self._generation
        if self._window > self._lead:
            self._warning_timer = self._clock.call_later(self._window - self._lead, self._fire_warning)
        self._logout_timer = self._clock.call_later(
            self._window + self._slack, lambda: self._fire_forced_logout(generation)
        )

    def _cancel_timers(self) -> None:
        for timer in (self._warning_timer, self._logout_timer):
            if timer is not None:
                timer.cancel()
        self._warning_timer = None
        self._logout_timer = None

    def _fire_warning(self) -> None:
        self._warning_timer = None
        if self._disposed:
            return
        remaining_ms = int(self._lead * 1000)
        self._stop_countdown()
        self.warning = WarningState(active=True, remaining_ms=remaining_ms)
        self._countdown_timer = self._clock.call_later(self._tick, self._countdown)
        logger.info("Idle warning: logout in %ss", int(self._lead))
        self._on_warning(remaining_ms)

    def _countdown(self) -> None:
        self._countdown_timer = None
        if self._disposed or not self.warning.active:
            return
        remaining_ms = max(0, self.warning.remaining_ms - int(self._tick * 1000))
        if remaining_ms <= 0:
            self._end_warning(notify=True)
            return
        self.warning = WarningState(active=True, remaining_ms=remaining_ms)
        self._countdown_timer = self._clock.call_later(self._tick, self._countdown)
        if self._on_tick is not None:
            self._on_tick(remaining_ms)

    def _stop_countdown(self) -> None:
        if self._countdown_timer is not None:
            self._countdown_timer.cancel()
            self._countdown_timer = None

    def _end_warning(self, *, notify: bool) -> None:
        self._stop_countdown()
        was_active = self.warning.active
        self.warning = WarningState()
        if notify and was_active and self._on_warning_end is not None:
            self._on_warning_end()

    def _fire_forced_logout(self, generation: int) -> None:
        if self._disposed:
            return
        # Activity recorded after this timer was armed means a fresher timer owns the deadline
        if generation != self._generation:
            logger.debug("Idle logout timer fired after fresh activity; ignoring")
            return
        self._cancel_timers()
        self._end_warning(notify=False)
        logger.info("Idle timeout reached; forcing logout")
        self._on_forced_logout()


def start_idle_monitor(
    clock: Clock,
    minutes,
    *,
    on_warning: Callable[[int], None],
    on_forced_logout: Callable[[], None],
    on_tick: Callable[[int], None] | None = None,
    on_warning_end: Callable[[], None] | None = None,
) -> IdleMonitor:
    """Create a monitor and arm it for the given timeout (0 = disabled, nothing armed)."""
    monitor = IdleMonitor(
        clock,
        on_warning=on_warning,
        on_forced_logout=on_forced_logout,
        on_tick=on_tick,
        on_warning_end=on_warning_end,
    )
    monitor.reconfigure(minutes)
    return monitor
