"""Unit tests for the change feed."""
import asyncio

import pytest

from feed import INSERT, UPDATE, ChangeEvent, ChangeFeed, SubscriptionDropped
from sessions.models import Course


def drain(subscription):
    events = []
    while True:
        change = subscription.get_nowait()
        if change is None:
            return events
        events.append(change)


class TestChangeFeedBinding:
    """Test cases for commit-time publication."""

    def test_insert_published_on_commit(self, db, feed):
        subscription = feed.subscribe(("classes", "lecturer_id", "lect-9"))
        course = Course(course_code="MA1", course_name="Analyse", lecturer_id="lect-9")
        db.add(course)
        db.flush()
        assert drain(subscription) == []

        db.commit()
        events = drain(subscription)
        assert len(events) == 1
        assert events[0].table == "classes"
        assert events[0].kind == INSERT
        assert events[0].id == course.id

    def test_rollback_discards_pending(self, db, feed):
        subscription = feed.subscribe(("classes", "lecturer_id", "lect-9"))
        db.add(Course(course_code="MA1", course_name="Analyse", lecturer_id="lect-9"))
        db.flush()
        db.rollback()
        assert drain(subscription) == []

    def test_update_published(self, db, feed):
        course = Course(course_code="MA1", course_name="Analyse", lecturer_id="lect-9")
        db.add(course)
        db.commit()

        subscription = feed.subscribe(("classes", "id", course.id))
        course.course_name = "Analyse II"
        db.commit()
        events = drain(subscription)
        assert [e.kind for e in events] == [UPDATE]
        assert events[0].row["course_name"] == "Analyse II"

    def test_scoped_filters(self, db, feed):
        mine = feed.subscribe(("classes", "lecturer_id", "lect-9"))
        db.add(Course(course_code="PH1", course_name="Physique", lecturer_id="lect-3"))
        db.commit()
        assert drain(mine) == []


class TestSubscription:
    """Test cases for subscription handles."""

    def _event(self, session_id="s1", row_id="r1"):
        return ChangeEvent("attendance_records", INSERT, {"id": row_id, "session_id": session_id})

    def test_matches_and_unwatch(self):
        feed = ChangeFeed(queue_size=10)
        subscription = feed.subscribe(("attendance_records", "session_id", "s1"))
        assert subscription.matches(self._event())
        assert not subscription.matches(self._event(session_id="s2"))
        subscription.unwatch("attendance_records", "session_id", "s1")
        assert not subscription.matches(self._event())

    def test_close_stops_delivery(self):
        feed = ChangeFeed(queue_size=10)
        with feed.subscribe(("attendance_records", "session_id", "s1")) as subscription:
            assert feed.subscriber_count == 1
        feed.publish(self._event())
        assert feed.subscriber_count == 0
        assert subscription.get_nowait() is None

    def test_overflow_drops_subscriber(self):
        feed = ChangeFeed(queue_size=2)
        subscription = feed.subscribe(("attendance_records", "session_id", "s1"))
        for i in range(3):
            feed.publish(self._event(row_id=f"r{i}"))
        assert subscription.dropped is True
        assert feed.subscriber_count == 0
        with pytest.raises(SubscriptionDropped):
            subscription.get_nowait()

    @pytest.mark.asyncio
    async def test_disconnect_all_wakes_readers(self):
        feed = ChangeFeed(queue_size=10)
        subscription = feed.subscribe(("attendance_records", "session_id", "s1"))
        reader = asyncio.ensure_future(subscription.get())
        await asyncio.sleep(0)
        feed.disconnect_all()
        with pytest.raises(SubscriptionDropped):
            await asyncio.wait_for(reader, timeout=1)

    def test_to_json_formats_timestamps(self, clock):
        event = ChangeEvent("session_checks", INSERT, {"id": "c1", "expires_at": clock()})
        assert event.to_json()["row"]["expires_at"] == "2026-01-20T09:00:00+00:00"
