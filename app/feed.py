"""Change-notification feed for committed rows.

The feed is bound to a SQLAlchemy session factory: rows inserted or updated
in a unit of work are collected at flush time and published only once the
transaction commits. Observers hold explicit ``Subscription`` handles scoped
to entity identities, e.g. ``("attendance_records", "session_id", sid)``.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import event, inspect

from countdown import as_utc
from settings import settings

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"

_PENDING_KEY = "change_feed_pending"

# device identity and raw GPS readings stay in the store
PRIVATE_COLUMNS = frozenset({"device_fingerprint", "latitude", "longitude", "accuracy_meters"})

Filter = Tuple[str, str, str]


@dataclass(frozen=True)
class ChangeEvent:
    """One committed row change."""

    table: str
    kind: str
    row: Dict[str, Any]

    @property
    def id(self) -> Optional[str]:
        return self.row.get("id")

    def to_json(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "kind": self.kind,
            "row": {
                key: value.isoformat() if isinstance(value, datetime) else value
                for key, value in self.row.items()
            },
        }


class SubscriptionDropped(Exception):
    """The subscription lost events; the observer must resynchronise."""


_DROPPED = object()


def row_to_dict(obj) -> Dict[str, Any]:
    """Published column values of a mapped instance, timestamps normalised to UTC."""
    row = {}
    for attr in inspect(obj).mapper.column_attrs:
        if attr.key in PRIVATE_COLUMNS:
            continue
        value = getattr(obj, attr.key)
        if isinstance(value, datetime):
            value = as_utc(value)
        row[attr.key] = value
    return row


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class Subscription:
    """A scoped handle on the feed; close it when the observer goes away."""

    def __init__(self, feed: "ChangeFeed", maxsize: int):
        self._feed = feed
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._filters: Set[Filter] = set()
        self._loop = _running_loop()
        self.dropped = False
        self.closed = False

    def watch(self, table: str, column: str, value: Any) -> "Subscription":
        self._filters.add((table, column, str(value)))
        return self

    def unwatch(self, table: str, column: str, value: Any) -> None:
        self._filters.discard((table, column, str(value)))

    @property
    def filters(self) -> Set[Filter]:
        return set(self._filters)

    def matches(self, change: ChangeEvent) -> bool:
        for table, column, value in self._filters:
            if table == change.table and str(change.row.get(column)) == value:
                return True
        return False

    def _deliver(self, change: ChangeEvent) -> None:
        loop = self._loop
        if loop is not None and loop.is_running() and _running_loop() is not loop:
            loop.call_soon_threadsafe(self._put, change)
        else:
            self._put(change)

    def _put(self, item: Any) -> None:
        if self.closed or self.dropped:
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("Subscription queue overflow, dropping subscriber")
            self.drop()

    def drop(self) -> None:
        """Mark the subscription as having lost events and wake its reader."""
        if self.dropped or self.closed:
            return
        self.dropped = True
        self._feed._discard(self)
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_DROPPED)

    async def get(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _DROPPED:
            raise SubscriptionDropped()
        return item

    def get_nowait(self) -> Optional[ChangeEvent]:
        if self._queue.empty():
            return None
        item = self._queue.get_nowait()
        if item is _DROPPED:
            raise SubscriptionDropped()
        return item

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._feed._discard(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class ChangeFeed:
    """Fan-out of committed row changes to matching subscriptions."""

    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or settings.feed_queue_size
        self._subscriptions: Set[Subscription] = set()
        self._lock = threading.Lock()

    def subscribe(self, *filters: Iterable[Any]) -> Subscription:
        subscription = Subscription(self, self.queue_size)
        for table, column, value in filters:
            subscription.watch(table, column, value)
        with self._lock:
            self._subscriptions.add(subscription)
        return subscription

    def _discard(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, change: ChangeEvent) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(change)]
        for subscription in targets:
            subscription._deliver(change)

    def disconnect_all(self) -> None:
        """Drop every subscriber, as a lost connection would."""
        with self._lock:
            targets = list(self._subscriptions)
        for subscription in targets:
            subscription.drop()

    # ---------- SQLAlchemy binding ----------

    def bind(self, session_factory) -> None:
        """Publish committed changes made through sessions of this factory."""
        event.listen(session_factory, "after_flush", self._collect)
        event.listen(session_factory, "after_commit", self._publish_pending)
        event.listen(session_factory, "after_rollback", self._discard_pending)

    def _collect(self, session, flush_context) -> None:
        pending: List[ChangeEvent] = session.info.setdefault(_PENDING_KEY, [])
        for obj in session.new:
            pending.append(ChangeEvent(obj.__table__.name, INSERT, row_to_dict(obj)))
        for obj in session.dirty:
            if session.is_modified(obj, include_collections=False):
                pending.append(ChangeEvent(obj.__table__.name, UPDATE, row_to_dict(obj)))

    def _publish_pending(self, session) -> None:
        for change in session.info.pop(_PENDING_KEY, []):
            self.publish(change)

    def _discard_pending(self, session) -> None:
        session.info.pop(_PENDING_KEY, None)


change_feed = ChangeFeed()
