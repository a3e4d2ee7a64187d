"""
Forced logout at token expiry. One-shot timer derived from the token's exp only;
user activity never moves it.
"""
import logging
from typing import Callable

from session_core.claims import Claims
from session_core.clock import Clock, Timer
from session_core.config import EXPIRY_GRACE_SECONDS

logger = logging.getLogger(__name__)


def _noop() -> None:
    return None


class ExpiryScheduler:
    def __init__(self, clock: Clock, *, grace_seconds: float = EXPIRY_GRACE_SECONDS):
        self._clock = clock
        self._grace = grace_seconds
        self._timer: Timer | None = None

    @property
    def armed(self) -> bool:
        return self._timer is not None

    def arm(self, claims: Claims | None, on_expire: Callable[[], None]) -> Callable[[], None]:
        """
        Schedule on_expire for claims.expires_at (+ grace). Already expired -> next tick, no grace.
        Always disarms the previous timer first. Returns a disposer for this timer only.
        """
        self.disarm()
        if claims is None or claims.expires_at is None:
            return _noop

        remaining = claims.expires_at - self._clock.now()
        delay = 0.0 if remaining <= 0 else remaining + self._grace
        fired = False

        def _fire() -> None:
            nonlocal fired
            if fired:
                return
            fired = True
            if self._timer is timer:
                self._timer = None
            logger.info("Token expired; forcing logout")
            on_expire()

        timer = self._clock.call_later(delay, _fire)
        self._timer = timer
        logger.debug("Expiry timer armed for %.1fs", delay)

        def dispose() -> None:
            if self._timer is timer:
                timer.cancel()
                self._timer = None

        return dispose

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
