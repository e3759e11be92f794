"""Student-side presence check flow.

    idle -> prompt            a new active check is observed
    prompt -> verifying       confirm_presence()
    verifying -> verified     response recorded; back to idle after a delay
    verifying -> prompt       validation or transport failure, retry allowed
    prompt -> idle            window lapsed without success ("missed")

The countdown is computed on this device from the check's expiry time, so
it does not depend on the lecturer's device. The response table in the
store remains the source of truth for the tally.
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

from countdown import Countdown, as_utc, seconds_remaining, utcnow
from errors import (
    CheckExpired,
    DuplicateResponse,
    LocationRequired,
    OutOfRange,
    SessionClosed,
    ValidationTransportFailure,
    VerificationError,
)
from geo import check_point_in_geofence, relaxed_radius
from settings import settings

logger = logging.getLogger(__name__)

Location = Tuple[float, float]


class PromptState(str, Enum):
    idle = "idle"
    prompt = "prompt"
    verifying = "verifying"
    verified = "verified"


def parse_timestamp(value) -> datetime:
    """Accept datetimes from the in-process feed and ISO strings from SSE."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return as_utc(value)


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class PresencePrompt:
    """Presence check state for one student observing one session."""

    def __init__(
        self,
        session_id: str,
        respond: Callable[[str, Optional[Location]], Awaitable],
        locate: Optional[Callable[[], Awaitable[Optional[Location]]]] = None,
        geofence: Optional[Tuple[float, float, float]] = None,
        now: Callable[[], datetime] = utcnow,
        on_missed: Optional[Callable[[str], None]] = None,
        on_verified: Optional[Callable[[str], None]] = None,
        verified_display_seconds: Optional[float] = None,
        tolerance: Optional[float] = None,
    ):
        self.session_id = str(session_id)
        self.respond = respond
        self.locate = locate
        self.geofence = geofence
        self.now = now
        self.on_missed = on_missed
        self.on_verified = on_verified
        self.verified_display_seconds = (
            settings.verified_display_seconds
            if verified_display_seconds is None
            else verified_display_seconds
        )
        self.tolerance = settings.check_radius_tolerance if tolerance is None else tolerance

        self.state = PromptState.idle
        self.check_id: Optional[str] = None
        self.expires_at: Optional[datetime] = None
        self.last_error: Optional[VerificationError] = None
        self.missed: List[str] = []
        self._clock: Optional[Countdown] = None
        self._reset_handle: Optional[asyncio.TimerHandle] = None

    @property
    def seconds_remaining(self) -> int:
        if self.expires_at is None:
            return 0
        return seconds_remaining(self.expires_at, self.now())

    def observe_check(self, row: dict) -> bool:
        """Fold a session_checks row; returns True when it opens a prompt."""
        if str(row.get("session_id")) != self.session_id:
            return False
        check_id = str(row["id"])
        if not row.get("is_active", True):
            if check_id == self.check_id and self.state == PromptState.prompt:
                self._miss()
            return False
        if check_id == self.check_id:
            return False
        expires_at = parse_timestamp(row["expires_at"])
        if seconds_remaining(expires_at, self.now()) == 0:
            return False

        self._stop_timers()
        self.check_id = check_id
        self.expires_at = expires_at
        self.last_error = None
        self.state = PromptState.prompt
        self._clock = Countdown(expires_at, on_expire=self._on_window_lapsed, now=self.now)
        if _loop_running():
            self._clock.start()
        logger.info("Presence check %s prompted (%ss)", check_id, self.seconds_remaining)
        return True

    def tick(self) -> int:
        """Recompute the countdown; used when no event loop drives the timer."""
        if self._clock is None:
            return 0
        return self._clock.tick()

    async def confirm_presence(self) -> bool:
        """Answer the current check. Returns True once the response is recorded."""
        if self.state != PromptState.prompt or self.check_id is None:
            return False
        if self.seconds_remaining == 0:
            self._miss()
            return False

        check_id = self.check_id
        self.state = PromptState.verifying
        try:
            location = await self.locate() if self.locate is not None else None
            self._prevalidate(location)
            await self.respond(check_id, location)
        except DuplicateResponse:
            # already recorded by an earlier attempt
            pass
        except (CheckExpired, SessionClosed) as e:
            self.last_error = e
            self._miss()
            return False
        except VerificationError as e:
            logger.info("Presence check %s not confirmed: %s", check_id, e.detail)
            self._retry_or_miss(e)
            return False
        except Exception as e:
            # location or network failure on this device
            logger.warning("Presence check %s could not be sent: %s", check_id, e)
            self._retry_or_miss(ValidationTransportFailure())
            return False

        self._verified(check_id)
        return True

    def _retry_or_miss(self, error: VerificationError) -> None:
        self.last_error = error
        if self.seconds_remaining == 0:
            self._miss()
        else:
            self.state = PromptState.prompt

    def _prevalidate(self, location: Optional[Location]) -> None:
        """Same relaxed geofence the store applies, checked before sending."""
        if self.geofence is None:
            return
        if location is None:
            raise LocationRequired()
        center_lat, center_lon, radius = self.geofence
        allowed = relaxed_radius(radius, self.tolerance)
        inside, distance = check_point_in_geofence(
            location[0], location[1], center_lat, center_lon, allowed
        )
        if not inside:
            raise OutOfRange(distance, allowed)

    def _on_window_lapsed(self) -> None:
        # a confirmation in flight decides for itself once the store answers
        if self.state == PromptState.prompt:
            self._miss()

    def _miss(self) -> None:
        check_id = self.check_id
        self._stop_timers()
        self.state = PromptState.idle
        self.check_id = None
        self.expires_at = None
        if check_id is not None:
            self.missed.append(check_id)
            logger.info("Presence check %s missed", check_id)
            if self.on_missed is not None:
                self.on_missed(check_id)

    def _verified(self, check_id: str) -> None:
        self._stop_timers()
        self.state = PromptState.verified
        if self.on_verified is not None:
            self.on_verified(check_id)
        if _loop_running():
            self._reset_handle = asyncio.get_running_loop().call_later(
                self.verified_display_seconds, self._reset_after_verified, check_id
            )

    def _reset_after_verified(self, check_id: str) -> None:
        self._reset_handle = None
        if self.state == PromptState.verified and self.check_id == check_id:
            self.state = PromptState.idle
            self.check_id = None
            self.expires_at = None

    def _stop_timers(self) -> None:
        if self._clock is not None:
            self._clock.stop()
            self._clock = None
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

    def close(self) -> None:
        """Release timers; called on teardown or when the session ends."""
        self._stop_timers()
        self.state = PromptState.idle
        self.check_id = None
        self.expires_at = None
