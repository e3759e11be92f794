"""Observer-side folding of the change feed.

Each observer owns one scoped subscription and folds row events into local
state keyed by row identity, so duplicate deliveries never double count and
arrival order does not matter. After a dropped subscription the observer
re-subscribes and reloads one authoritative snapshot instead of replaying
missed events.
"""
import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from checks.prompt import PresencePrompt, parse_timestamp
from countdown import Countdown, seconds_remaining, utcnow
from feed import INSERT, UPDATE, ChangeEvent, ChangeFeed, Subscription, SubscriptionDropped
from sentiments.schemas import empty_tally
from sessions.schemas import SessionSnapshot

logger = logging.getLogger(__name__)

SESSIONS = "attendance_sessions"
RECORDS = "attendance_records"
SENTIMENTS = "session_sentiments"
CHECKS = "session_checks"
RESPONSES = "session_check_responses"


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class _Observer:
    """Subscription lifecycle shared by lecturer and student observers."""

    def __init__(self, session_id: str, feed: ChangeFeed, loader: Optional[Callable] = None):
        self.session_id = str(session_id)
        self.feed = feed
        self.loader = loader
        self.resync_count = 0
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None

    def _filters(self) -> List[tuple]:
        raise NotImplementedError

    def apply(self, change: ChangeEvent) -> bool:
        raise NotImplementedError

    def load_snapshot(self, snapshot: SessionSnapshot) -> None:
        raise NotImplementedError

    def _subscribe(self) -> Subscription:
        if self._subscription is not None:
            self._subscription.close()
        self._subscription = self.feed.subscribe(*self._filters())
        return self._subscription

    async def resync(self) -> None:
        """Replace local state with the store's current aggregate."""
        if self.loader is None:
            return
        snapshot = await _resolve(self.loader(self.session_id))
        if isinstance(snapshot, dict):
            snapshot = SessionSnapshot.model_validate(snapshot)
        self.load_snapshot(snapshot)
        self.resync_count += 1
        logger.info("Observer for session %s resynchronised", self.session_id)

    async def open(self) -> None:
        # subscribe before loading so nothing committed in between is lost
        self._subscribe()
        await self.resync()
        self._task = asyncio.get_running_loop().create_task(self._consume())

    async def _consume(self) -> None:
        while True:
            try:
                change = await self._subscription.get()
            except SubscriptionDropped:
                logger.warning("Subscription for session %s dropped", self.session_id)
                self._subscribe()
                await self.resync()
                continue
            try:
                self.apply(change)
            except Exception:
                logger.exception("Failed to apply %s change %s", change.table, change.id)

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        self._teardown()

    def _teardown(self) -> None:
        pass

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class LiveSessionView(_Observer):
    """
    Lecturer dashboard state for one session: live attendance feed,
    attendee count, sentiment tally, presence check countdown and tally,
    and the session countdown.
    """

    def __init__(
        self,
        session_id: str,
        feed: ChangeFeed,
        loader: Optional[Callable] = None,
        now: Callable[[], datetime] = utcnow,
        on_new_attendee: Optional[Callable[[dict], None]] = None,
        on_session_expired: Optional[Callable[[str], Any]] = None,
        on_session_ended: Optional[Callable[[str], None]] = None,
    ):
        super().__init__(session_id, feed, loader)
        self.now = now
        self.on_new_attendee = on_new_attendee
        self.on_session_expired = on_session_expired
        self.on_session_ended = on_session_ended

        self.is_active = True
        self.end_time: Optional[datetime] = None
        self.active_check_id: Optional[str] = None
        self.check_expires_at: Optional[datetime] = None
        self.check_open = False
        self._attendees: Dict[str, dict] = {}
        self._sentiments: Dict[str, str] = {}
        self._responses: Dict[str, Set[str]] = {}
        self._session_clock: Optional[Countdown] = None
        self._check_clock: Optional[Countdown] = None
        self._callbacks: Set[asyncio.Task] = set()

    def _filters(self) -> List[tuple]:
        return [
            (SESSIONS, "id", self.session_id),
            (RECORDS, "session_id", self.session_id),
            (SENTIMENTS, "session_id", self.session_id),
            (CHECKS, "session_id", self.session_id),
            (RESPONSES, "session_id", self.session_id),
        ]

    # ---------- read-only views ----------

    @property
    def live_feed(self) -> List[dict]:
        """Attendees, newest scan first (scan time, not arrival order)."""
        return sorted(self._attendees.values(), key=lambda a: a["scanned_at"], reverse=True)

    @property
    def attendee_count(self) -> int:
        return len(self._attendees)

    @property
    def sentiment_tally(self) -> Dict[str, int]:
        tally = empty_tally()
        for sentiment in self._sentiments.values():
            tally[sentiment] = tally.get(sentiment, 0) + 1
        return tally

    @property
    def seconds_remaining(self) -> int:
        if not self.is_active or self.end_time is None:
            return 0
        return seconds_remaining(self.end_time, self.now())

    def check_response_count(self, check_id: Optional[str] = None) -> int:
        check_id = check_id or self.active_check_id
        return len(self._responses.get(check_id, ()))

    @property
    def check_state(self) -> Optional[dict]:
        if self.active_check_id is None:
            return None
        remaining = 0
        if self.check_open and self.check_expires_at is not None:
            remaining = seconds_remaining(self.check_expires_at, self.now())
        return {
            "check_id": self.active_check_id,
            "is_active": self.check_open,
            "seconds_remaining": remaining,
            "response_count": self.check_response_count(),
        }

    # ---------- folding ----------

    def apply(self, change: ChangeEvent) -> bool:
        """Fold one event; returns True if local state changed."""
        row = change.row
        if change.table == RECORDS and change.kind == INSERT:
            return self._add_attendee(row)
        if change.table == SENTIMENTS and change.kind == INSERT:
            if str(row.get("session_id")) != self.session_id or row["id"] in self._sentiments:
                return False
            self._sentiments[row["id"]] = row["sentiment"]
            return True
        if change.table == CHECKS:
            if str(row.get("session_id")) != self.session_id:
                return False
            if row.get("is_active", True) and change.kind == INSERT:
                return self._arm_check(str(row["id"]), parse_timestamp(row["expires_at"]))
            if not row.get("is_active", True) and str(row["id"]) == self.active_check_id:
                self._close_check()
                return True
            return False
        if change.table == RESPONSES and change.kind == INSERT:
            if str(row.get("session_id")) != self.session_id:
                return False
            # may arrive before the check itself has been folded
            responses = self._responses.setdefault(str(row["check_id"]), set())
            if row["id"] in responses:
                return False
            responses.add(row["id"])
            return True
        if change.table == SESSIONS and change.kind == UPDATE:
            if str(row.get("id")) == self.session_id and not row.get("is_active", True):
                return self._mark_ended()
        return False

    def _add_attendee(self, row: dict) -> bool:
        if str(row.get("session_id")) != self.session_id or row["id"] in self._attendees:
            return False
        entry = {
            "id": row["id"],
            "student_id": row["student_id"],
            "scanned_at": parse_timestamp(row["scanned_at"]),
        }
        self._attendees[row["id"]] = entry
        if self.on_new_attendee is not None:
            self.on_new_attendee(entry)
        return True

    def _arm_check(self, check_id: str, expires_at: datetime) -> bool:
        if check_id == self.active_check_id:
            return False
        if seconds_remaining(expires_at, self.now()) == 0:
            return False
        if self.active_check_id is not None:
            self._close_check()
        self.active_check_id = check_id
        self.check_expires_at = expires_at
        self.check_open = True
        self._responses.setdefault(check_id, set())
        self._check_clock = Countdown(expires_at, on_expire=self._close_check, now=self.now)
        if _loop_running():
            self._check_clock.start()
        return True

    def _close_check(self) -> None:
        """Stop counting responses for the current check; the final tally stays."""
        if self._check_clock is not None:
            self._check_clock.stop()
            self._check_clock = None
        self.check_open = False

    def _mark_ended(self) -> bool:
        if not self.is_active:
            return False
        self.is_active = False
        self._stop_clocks()
        logger.info("Session %s ended", self.session_id)
        if self.on_session_ended is not None:
            self.on_session_ended(self.session_id)
        return True

    def tick(self) -> int:
        """Recompute both countdowns; used when no event loop drives them."""
        if self._check_clock is not None:
            self._check_clock.tick()
        if self._session_clock is not None:
            return self._session_clock.tick()
        return self.seconds_remaining

    def _on_session_clock_expired(self) -> None:
        if self.is_active and self.on_session_expired is not None:
            result = self.on_session_expired(self.session_id)
            if inspect.isawaitable(result) and _loop_running():
                task = asyncio.ensure_future(result)
                self._callbacks.add(task)
                task.add_done_callback(self._expiry_callback_done)

    def _expiry_callback_done(self, task: asyncio.Task) -> None:
        self._callbacks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Expiry report for session %s failed",
                self.session_id,
                exc_info=task.exception(),
            )

    def load_snapshot(self, snapshot: SessionSnapshot) -> None:
        self._attendees = {
            a.id: {"id": a.id, "student_id": a.student_id, "scanned_at": parse_timestamp(a.scanned_at)}
            for a in snapshot.attendees
        }
        self._sentiments = {s.id: s.sentiment for s in snapshot.sentiments}
        self.end_time = parse_timestamp(snapshot.end_time)

        if snapshot.active_check is not None:
            check = snapshot.active_check
            if check.check_id != self.active_check_id:
                self._arm_check(check.check_id, parse_timestamp(check.expires_at))
            self._responses[check.check_id] = set(snapshot.check_response_ids)
        elif self.active_check_id is not None and self.check_open:
            self._close_check()

        if not snapshot.is_active:
            self._mark_ended()
        elif self._session_clock is None:
            self._session_clock = Countdown(
                self.end_time, on_expire=self._on_session_clock_expired, now=self.now
            )
            if _loop_running():
                self._session_clock.start()

    def _stop_clocks(self) -> None:
        if self._session_clock is not None:
            self._session_clock.stop()
            self._session_clock = None
        if self._check_clock is not None:
            self._check_clock.stop()
            self._check_clock = None
        self.check_open = False

    def _teardown(self) -> None:
        self._stop_clocks()
        for task in list(self._callbacks):
            task.cancel()


class StudentSessionObserver(_Observer):
    """
    Student device view of a session: watches for the session ending and
    for new presence checks, which are handed to a ``PresencePrompt``.
    """

    def __init__(
        self,
        session_id: str,
        feed: ChangeFeed,
        prompt: PresencePrompt,
        loader: Optional[Callable] = None,
        on_session_ended: Optional[Callable[[str], None]] = None,
    ):
        super().__init__(session_id, feed, loader)
        self.prompt = prompt
        self.on_session_ended = on_session_ended
        self.ended = False

    def _filters(self) -> List[tuple]:
        return [
            (SESSIONS, "id", self.session_id),
            (CHECKS, "session_id", self.session_id),
        ]

    def apply(self, change: ChangeEvent) -> bool:
        row = change.row
        if change.table == SESSIONS and change.kind == UPDATE:
            if str(row.get("id")) == self.session_id and not row.get("is_active", True):
                return self._end()
            return False
        if change.table == CHECKS and not self.ended:
            return self.prompt.observe_check(row)
        return False

    def load_snapshot(self, snapshot: SessionSnapshot) -> None:
        if not snapshot.is_active:
            self._end()
            return
        if snapshot.active_check is not None:
            check = snapshot.active_check
            self.prompt.observe_check(
                {
                    "id": check.check_id,
                    "session_id": check.session_id,
                    "expires_at": check.expires_at,
                    "is_active": check.is_active,
                }
            )

    def _end(self) -> bool:
        if self.ended:
            return False
        self.ended = True
        self.prompt.close()
        if self.on_session_ended is not None:
            self.on_session_ended(self.session_id)
        return True

    def _teardown(self) -> None:
        self.prompt.close()
