"""Unit tests for session codes and countdowns."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from countdown import Countdown, as_utc, generate_session_code, seconds_remaining


class TestSessionCode:
    """Test cases for session code generation."""

    def test_codes_are_unique(self):
        codes = {generate_session_code() for _ in range(200)}
        assert len(codes) == 200

    def test_code_is_url_safe(self):
        code = generate_session_code()
        assert len(code) >= 20
        assert all(c.isalnum() or c in "-_" for c in code)


class TestSecondsRemaining:
    """Test cases for wall-clock remaining time."""

    def test_exactly_zero_at_end(self, clock):
        end = clock() + timedelta(seconds=90)
        assert seconds_remaining(end, clock()) == 90
        clock.advance(90)
        assert seconds_remaining(end, clock()) == 0

    def test_never_negative(self, clock):
        end = clock()
        clock.advance(3600)
        assert seconds_remaining(end, clock()) == 0

    def test_non_increasing(self, clock):
        end = clock() + timedelta(minutes=2)
        values = []
        for step in [0.3, 0.9, 1.0, 7.5, 0.1, 30, 100]:
            values.append(seconds_remaining(end, clock()))
            clock.advance(step)
        assert values == sorted(values, reverse=True)

    def test_suspension_recomputes_from_end_time(self, clock):
        """Test that a long pause is reflected on the next tick."""
        end = clock() + timedelta(minutes=10)
        clock.advance(7 * 60 + 0.5)
        assert seconds_remaining(end, clock()) == 179

    def test_naive_timestamps_are_utc(self):
        naive = datetime(2026, 1, 20, 9, 0, 0)
        assert as_utc(naive) == datetime(2026, 1, 20, 9, 0, 0, tzinfo=timezone.utc)


class TestCountdown:
    """Test cases for the Countdown timer."""

    def test_expire_fires_exactly_once(self, clock):
        expired = []
        ticks = []
        countdown = Countdown(
            clock() + timedelta(seconds=2),
            on_tick=ticks.append,
            on_expire=lambda: expired.append(True),
            now=clock,
        )
        assert countdown.tick() == 2
        clock.advance(5)
        assert countdown.tick() == 0
        assert countdown.tick() == 0
        assert expired == [True]
        assert ticks == [2, 0, 0]

    def test_already_elapsed_expires_on_first_tick(self, clock):
        expired = []
        countdown = Countdown(clock() - timedelta(seconds=1), on_expire=lambda: expired.append(1), now=clock)
        assert countdown.remaining == 0
        countdown.tick()
        assert expired == [1]

    @pytest.mark.asyncio
    async def test_runs_until_expiry(self, clock):
        expired = asyncio.Event()

        def on_tick(remaining):
            clock.advance(1)

        countdown = Countdown(
            clock() + timedelta(seconds=3),
            on_tick=on_tick,
            on_expire=expired.set,
            now=clock,
            interval=0.001,
        )
        countdown.start()
        await asyncio.wait_for(expired.wait(), timeout=2)
        await asyncio.sleep(0)
        assert countdown.expired is True
        assert countdown.running is False

    @pytest.mark.asyncio
    async def test_stop_cancels_timer(self, clock):
        expired = []
        async with Countdown(
            clock() + timedelta(minutes=5),
            on_expire=lambda: expired.append(1),
            now=clock,
            interval=0.001,
        ) as countdown:
            await asyncio.sleep(0.01)
            assert countdown.running is True
        assert countdown.running is False
        assert expired == []

    @pytest.mark.asyncio
    async def test_stop_from_expire_callback(self, clock):
        holder = {}

        def on_expire():
            holder["countdown"].stop()

        countdown = Countdown(clock(), on_expire=on_expire, now=clock, interval=0.001)
        holder["countdown"] = countdown
        countdown.start()
        await asyncio.sleep(0.01)
        assert countdown.expired is True
        assert countdown.running is False
