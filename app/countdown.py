"""Session code generation and wall-clock countdowns.

Every countdown in the system recomputes the remaining time from an
absolute end timestamp on each tick. Nothing is ever decremented, so a
suspended event loop (or a sleeping laptop) resumes with the right value.
"""
import asyncio
import logging
import math
import secrets
from datetime import datetime, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)

SESSION_CODE_BYTES = 16


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive timestamps coming back from the store are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def generate_session_code() -> str:
    """Opaque, URL-safe payload encoded in the session QR code."""
    return secrets.token_urlsafe(SESSION_CODE_BYTES)


def seconds_remaining(end_time: datetime, now: Optional[datetime] = None) -> int:
    """Whole seconds left until end_time, never negative."""
    now = as_utc(now or utcnow())
    delta = (as_utc(end_time) - now).total_seconds()
    return max(0, math.floor(delta))


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class Countdown:
    """
    Scoped 1-second timer against a fixed end time.

    ``on_tick(remaining)`` runs on every tick; ``on_expire()`` runs exactly
    once, the first time the remaining time is observed at zero. The timer
    stops itself after expiry and must be stopped by its owner on teardown.
    """

    def __init__(
        self,
        end_time: datetime,
        on_tick: Optional[Callable[[int], None]] = None,
        on_expire: Optional[Callable[[], None]] = None,
        now: Callable[[], datetime] = utcnow,
        interval: float = 1.0,
    ):
        self.end_time = as_utc(end_time)
        self.on_tick = on_tick
        self.on_expire = on_expire
        self.now = now
        self.interval = interval
        self.expired = False
        self._task: Optional[asyncio.Task] = None

    @property
    def remaining(self) -> int:
        return seconds_remaining(self.end_time, self.now())

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def tick(self) -> int:
        """Recompute the remaining time and fire callbacks."""
        remaining = self.remaining
        if self.on_tick is not None:
            self.on_tick(remaining)
        if remaining == 0 and not self.expired:
            self.expired = True
            if self.on_expire is not None:
                self.on_expire()
        return remaining

    async def _run(self) -> None:
        while True:
            if self.tick() == 0:
                return
            await asyncio.sleep(self.interval)

    def start(self) -> "Countdown":
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    def stop(self) -> None:
        if self._task is not None:
            # cancelling from inside on_expire would cancel the running tick
            if self._task is not _current_task():
                self._task.cancel()
            self._task = None

    async def __aenter__(self) -> "Countdown":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.stop()
