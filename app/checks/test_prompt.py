"""Unit tests for the student presence prompt."""
import asyncio
import math
from datetime import timedelta

import pytest

from checks.prompt import PresencePrompt, PromptState, parse_timestamp
from errors import (
    CheckExpired,
    DuplicateResponse,
    OutOfRange,
    ValidationTransportFailure,
)
from geo import EARTH_RADIUS_M

CENTER = (36.8065, 10.1815)


def north(meters):
    return CENTER[0] + meters / (EARTH_RADIUS_M * math.pi / 180), CENTER[1]


class FakeBackend:
    """Records calls and fails with queued errors, in order."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = []

    async def respond(self, check_id, location):
        self.calls.append((check_id, location))
        if self.errors:
            raise self.errors.pop(0)


def check_row(clock, check_id="check-1", session_id="session-1", seconds=60, is_active=True):
    return {
        "id": check_id,
        "session_id": session_id,
        "expires_at": (clock() + timedelta(seconds=seconds)).isoformat(),
        "is_active": is_active,
    }


def make_prompt(clock, backend, **kwargs):
    kwargs.setdefault("verified_display_seconds", 0.01)
    return PresencePrompt("session-1", backend.respond, now=clock, **kwargs)


class TestObserveCheck:
    """Test cases for prompting on new checks."""

    def test_new_check_opens_prompt(self, clock):
        prompt = make_prompt(clock, FakeBackend())
        assert prompt.observe_check(check_row(clock)) is True
        assert prompt.state == PromptState.prompt
        assert prompt.check_id == "check-1"
        assert prompt.seconds_remaining == 60

    def test_ignores_other_sessions(self, clock):
        prompt = make_prompt(clock, FakeBackend())
        assert prompt.observe_check(check_row(clock, session_id="session-2")) is False
        assert prompt.state == PromptState.idle

    def test_ignores_expired_check(self, clock):
        prompt = make_prompt(clock, FakeBackend())
        assert prompt.observe_check(check_row(clock, seconds=0)) is False
        assert prompt.state == PromptState.idle

    def test_same_check_delivered_twice(self, clock):
        prompt = make_prompt(clock, FakeBackend())
        prompt.observe_check(check_row(clock))
        clock.advance(10)
        assert prompt.observe_check(check_row(clock)) is False
        assert prompt.seconds_remaining == 50

    def test_lapse_counts_as_missed(self, clock):
        missed = []
        prompt = make_prompt(clock, FakeBackend(), on_missed=missed.append)
        prompt.observe_check(check_row(clock))
        clock.advance(59)
        assert prompt.tick() == 1
        assert prompt.state == PromptState.prompt
        clock.advance(1)
        assert prompt.tick() == 0
        assert prompt.state == PromptState.idle
        assert missed == ["check-1"]
        assert prompt.missed == ["check-1"]

    def test_deactivation_while_prompting_counts_as_missed(self, clock):
        missed = []
        prompt = make_prompt(clock, FakeBackend(), on_missed=missed.append)
        prompt.observe_check(check_row(clock))
        prompt.observe_check(check_row(clock, is_active=False))
        assert prompt.state == PromptState.idle
        assert missed == ["check-1"]

    def test_parse_timestamp(self, clock):
        assert parse_timestamp(clock().isoformat()) == clock()
        assert parse_timestamp(clock()) == clock()


class TestConfirmPresence:
    """Test cases for the verifying step."""

    @pytest.mark.asyncio
    async def test_confirm_then_reset_to_idle(self, clock):
        backend = FakeBackend()
        verified = []
        prompt = make_prompt(clock, backend, on_verified=verified.append)
        prompt.observe_check(check_row(clock))

        assert await prompt.confirm_presence() is True
        assert prompt.state == PromptState.verified
        assert verified == ["check-1"]
        assert backend.calls == [("check-1", None)]

        await asyncio.sleep(0.05)
        assert prompt.state == PromptState.idle
        prompt.close()

    @pytest.mark.asyncio
    async def test_out_of_range_allows_retry(self, clock):
        backend = FakeBackend(OutOfRange(180, 150))
        prompt = make_prompt(clock, backend)
        prompt.observe_check(check_row(clock))

        assert await prompt.confirm_presence() is False
        assert prompt.state == PromptState.prompt
        assert prompt.last_error.detail["code"] == "out_of_range"

        assert await prompt.confirm_presence() is True
        assert prompt.state == PromptState.verified
        assert len(backend.calls) == 2
        prompt.close()

    @pytest.mark.asyncio
    async def test_transport_failure_allows_retry(self, clock):
        backend = FakeBackend(ValidationTransportFailure())
        prompt = make_prompt(clock, backend)
        prompt.observe_check(check_row(clock))
        assert await prompt.confirm_presence() is False
        assert prompt.state == PromptState.prompt
        prompt.close()

    @pytest.mark.asyncio
    async def test_failure_after_window_is_missed(self, clock):
        backend = FakeBackend(ValidationTransportFailure())
        missed = []
        prompt = make_prompt(clock, backend, on_missed=missed.append)
        prompt.observe_check(check_row(clock))

        async def slow_respond(check_id, location):
            clock.advance(61)
            await backend.respond(check_id, location)

        prompt.respond = slow_respond
        assert await prompt.confirm_presence() is False
        assert prompt.state == PromptState.idle
        assert missed == ["check-1"]

    @pytest.mark.asyncio
    async def test_expired_on_server_is_missed(self, clock):
        missed = []
        prompt = make_prompt(clock, FakeBackend(CheckExpired()), on_missed=missed.append)
        prompt.observe_check(check_row(clock))
        assert await prompt.confirm_presence() is False
        assert prompt.state == PromptState.idle
        assert missed == ["check-1"]

    @pytest.mark.asyncio
    async def test_duplicate_response_counts_as_verified(self, clock):
        prompt = make_prompt(clock, FakeBackend(DuplicateResponse()))
        prompt.observe_check(check_row(clock))
        assert await prompt.confirm_presence() is True
        assert prompt.state == PromptState.verified
        prompt.close()

    @pytest.mark.asyncio
    async def test_local_geofence_rejects_before_sending(self, clock):
        backend = FakeBackend()

        async def locate():
            return north(160)

        prompt = make_prompt(clock, backend, locate=locate, geofence=(*CENTER, 100), tolerance=0.5)
        prompt.observe_check(check_row(clock))
        assert await prompt.confirm_presence() is False
        assert prompt.state == PromptState.prompt
        assert isinstance(prompt.last_error, OutOfRange)
        assert backend.calls == []
        prompt.close()

    @pytest.mark.asyncio
    async def test_local_geofence_tolerates_drift(self, clock):
        backend = FakeBackend()

        async def locate():
            return north(140)

        prompt = make_prompt(clock, backend, locate=locate, geofence=(*CENTER, 100), tolerance=0.5)
        prompt.observe_check(check_row(clock))
        assert await prompt.confirm_presence() is True
        assert backend.calls[0][1] == north(140)
        prompt.close()

    @pytest.mark.asyncio
    async def test_confirm_without_prompt_does_nothing(self, clock):
        backend = FakeBackend()
        prompt = make_prompt(clock, backend)
        assert await prompt.confirm_presence() is False
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_location_failure_allows_retry(self, clock):
        backend = FakeBackend()
        attempts = []

        async def locate():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("GPS unavailable")
            return CENTER

        prompt = make_prompt(clock, backend, locate=locate)
        prompt.observe_check(check_row(clock))

        assert await prompt.confirm_presence() is False
        assert prompt.state == PromptState.prompt
        assert isinstance(prompt.last_error, ValidationTransportFailure)
        assert backend.calls == []

        assert await prompt.confirm_presence() is True
        assert backend.calls == [("check-1", CENTER)]
        prompt.close()

    @pytest.mark.asyncio
    async def test_network_error_after_window_is_missed(self, clock):
        missed = []
        prompt = make_prompt(clock, FakeBackend(), on_missed=missed.append)
        prompt.observe_check(check_row(clock))

        async def unreachable(check_id, location):
            clock.advance(61)
            raise ConnectionError("connection reset")

        prompt.respond = unreachable
        assert await prompt.confirm_presence() is False
        assert prompt.state == PromptState.idle
        assert missed == ["check-1"]
