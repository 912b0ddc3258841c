"""
Unit tests for presence.py: debounce, duplicate suppression and queueing.
"""
import sys
import os
import asyncio

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from identity import SessionIdentity
from presence import PresenceReporter


class MockConnection:
    def __init__(self, open=True, fail_sends=False):
        self.sent_messages: list[dict] = []
        self.open = open
        self.fail_sends = fail_sends

    @property
    def is_open(self):
        return self.open

    async def send(self, message: dict) -> bool:
        if not self.open or self.fail_sends:
            return False
        self.sent_messages.append(message)
        return True

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent_messages]


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


DEBOUNCE = 0.02


def make_reporter(connection=None, clock=None):
    reporter = PresenceReporter(
        connection or MockConnection(),
        SessionIdentity("device-test", player_id="player-test", team_name="Owls"),
        debounce=DEBOUNCE,
        coalesce_window=0.5,
        clock=clock or FakeClock(),
    )
    reporter.attach()
    return reporter


async def settle():
    await asyncio.sleep(DEBOUNCE * 3)


class TestDebounce:
    @pytest.mark.asyncio
    async def test_hidden_sends_away(self):
        reporter = make_reporter()
        reporter.report_visibility(False)
        await settle()
        msg = reporter.connection.sent_messages[-1]
        assert msg["type"] == "PLAYER_AWAY"
        assert msg["reason"] == "tab_hidden"
        assert msg["teamName"] == "Owls"

    @pytest.mark.asyncio
    async def test_flicker_collapses_to_latest(self):
        """Rapid hidden/visible toggles produce one message for the final state."""
        reporter = make_reporter()
        reporter.report_visibility(False)
        reporter.report_visibility(True)
        reporter.report_visibility(False)
        reporter.report_visibility(True)
        await settle()
        assert reporter.connection.types() == ["PLAYER_ACTIVE"]

    @pytest.mark.asyncio
    async def test_focus_gained_needs_visibility(self):
        reporter = make_reporter()
        reporter.is_visible = False
        reporter.report_focus(True)
        await settle()
        assert reporter.connection.sent_messages == []

    @pytest.mark.asyncio
    async def test_focus_lost(self):
        reporter = make_reporter()
        reporter.report_focus(False)
        await settle()
        assert reporter.connection.sent_messages[-1]["reason"] == "focus_lost"
        assert reporter.away

    @pytest.mark.asyncio
    async def test_inactive_only_tracks_state(self):
        reporter = make_reporter()
        reporter.detach()
        reporter.report_visibility(False)
        await settle()
        assert reporter.connection.sent_messages == []
        assert reporter.away


class TestDuplicateSuppression:
    @pytest.mark.asyncio
    async def test_same_state_within_window_dropped(self):
        clock = FakeClock()
        reporter = make_reporter(clock=clock)
        assert await reporter.send_state(True, "tab_hidden")
        clock.now += 100
        assert not await reporter.send_state(True, "focus_lost")
        assert reporter.connection.types() == ["PLAYER_AWAY"]

    @pytest.mark.asyncio
    async def test_same_state_after_window_sent(self):
        clock = FakeClock()
        reporter = make_reporter(clock=clock)
        await reporter.send_state(True, "tab_hidden")
        clock.now += 600
        assert await reporter.send_state(True, "tab_hidden")

    @pytest.mark.asyncio
    async def test_state_change_always_sent(self):
        clock = FakeClock()
        reporter = make_reporter(clock=clock)
        await reporter.send_state(True, "tab_hidden")
        clock.now += 10
        assert await reporter.send_state(False, "tab_visible")
        assert reporter.connection.types() == ["PLAYER_AWAY", "PLAYER_ACTIVE"]


class TestQueue:
    @pytest.mark.asyncio
    async def test_queued_while_closed_then_flushed(self):
        connection = MockConnection(open=False)
        reporter = make_reporter(connection)
        assert not await reporter.send_state(True, "tab_hidden")
        assert reporter.queued == (True, "tab_hidden")
        connection.open = True
        assert await reporter.flush()
        assert connection.types() == ["PLAYER_AWAY"]
        assert reporter.queued is None

    @pytest.mark.asyncio
    async def test_queue_keeps_newest(self):
        connection = MockConnection(open=False)
        reporter = make_reporter(connection)
        await reporter.send_state(True, "tab_hidden")
        await reporter.send_state(False, "tab_visible")
        assert reporter.queued == (False, "tab_visible")

    @pytest.mark.asyncio
    async def test_failed_send_queued(self):
        connection = MockConnection(fail_sends=True)
        reporter = make_reporter(connection)
        assert not await reporter.send_state(True, "tab_hidden")
        assert reporter.queued == (True, "tab_hidden")

    @pytest.mark.asyncio
    async def test_flush_bypasses_duplicate_suppression(self):
        clock = FakeClock()
        connection = MockConnection()
        reporter = make_reporter(connection, clock=clock)
        await reporter.send_state(True, "tab_hidden")
        reporter.queued = (True, "tab_hidden")
        assert await reporter.flush()
        assert connection.types() == ["PLAYER_AWAY", "PLAYER_AWAY"]

    @pytest.mark.asyncio
    async def test_flush_empty_queue(self):
        reporter = make_reporter()
        assert not await reporter.flush()

    @pytest.mark.asyncio
    async def test_detach_keeps_queue(self):
        connection = MockConnection(open=False)
        reporter = make_reporter(connection)
        await reporter.send_state(True, "tab_hidden")
        reporter.detach()
        assert reporter.queued == (True, "tab_hidden")
