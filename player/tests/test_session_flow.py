"""
End-to-end player session tests: real ConnectionManager talking to a
uvicorn-served fake host over websockets.

Requires: pytest-asyncio, websockets
"""
import sys
import os
import asyncio
from contextlib import asynccontextmanager

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from connection_manager import ConnectionManager
from identity import SessionIdentity
from presence import PresenceReporter
from protocol import PlayerStateMachine
from session import PlayerSession
from fake_host import running_host, wait_until


@asynccontextmanager
async def player_session(host):
    connection = ConnectionManager(
        url=host.ws_url, discovery_url=f"http://127.0.0.1:{host.port}",
        base_delay_ms=10, max_delay_ms=40, connect_timeout=1, initial_delay=0,
    )
    identity = SessionIdentity("device-e2e", player_id="player-e2e")
    machine = PlayerStateMachine(connection, identity, approval_delay=0.5,
                                 lock_grace=0.05, fastest_duration=0.05, tick_interval=0.02)
    presence = PresenceReporter(connection, identity, debounce=0.02, coalesce_window=0.5)
    session = PlayerSession(connection=connection, identity=identity, machine=machine, presence=presence)
    await session.start()
    try:
        await wait_until(lambda: connection.is_open and host.clients)
        yield session
    finally:
        await session.stop()


async def join_and_approve(host, session, team="Owls"):
    await session.submit_team_name(team)
    await host.wait_for("PLAYER_JOIN")
    await host.broadcast("TEAM_APPROVED")
    await wait_until(lambda: session.machine.approved)


class TestFullRound:
    @pytest.mark.asyncio
    async def test_round_trip(self):
        """Join, answer, time up, reveal, next: the whole loop over a live socket."""
        async with running_host() as host:
            async with player_session(host) as session:
                await join_and_approve(host, session)
                assert session.machine.phase == "approval"

                await host.broadcast("QUESTION", {"type": "letters", "text": "Which letter?"})
                await host.broadcast("TIMER_START", {"seconds": 30, "timerStartTime": 1})
                await wait_until(lambda: session.machine.timer.state.running)

                await session.submit_answer("B")
                answer = await host.wait_for("PLAYER_ANSWER")
                assert answer["answer"] == "B"
                assert answer["questionType"] == "letters"
                assert answer["deviceId"] == "device-e2e"
                assert answer["responseTime"] > 0

                await host.broadcast("TIMEUP")
                await wait_until(lambda: session.machine.timer.state.locked)

                await host.broadcast("REVEAL", {"answer": "b"})
                await wait_until(lambda: session.machine.revealed)
                assert session.machine.answer_correct is True

                await host.broadcast("NEXT")
                await wait_until(lambda: session.machine.phase == "ready-for-question")

    @pytest.mark.asyncio
    async def test_malformed_frame_does_not_disturb_game(self):
        async with running_host() as host:
            async with player_session(host) as session:
                await join_and_approve(host, session)
                await host.broadcast("QUESTION", {"type": "numbers", "text": "How many?"})
                await host.send_raw("{garbage")
                await host.broadcast("TIMER", {"seconds": 9})
                await wait_until(lambda: session.machine.timer.state.remaining == 9)
                assert session.machine.phase == "question"


class TestReconnect:
    @pytest.mark.asyncio
    async def test_auto_rejoin_after_drop(self):
        async with running_host() as host:
            async with player_session(host) as session:
                await join_and_approve(host, session)
                await host.drop_clients()
                rejoin = await host.wait_for("PLAYER_JOIN", count=2)
                assert rejoin["teamName"] == "Owls"
                assert rejoin["deviceId"] == "device-e2e"
                assert host.connections == 2

    @pytest.mark.asyncio
    async def test_no_rejoin_before_approval(self):
        async with running_host() as host:
            async with player_session(host) as session:
                await session.submit_team_name("Owls")
                await host.wait_for("PLAYER_JOIN")
                await host.drop_clients()
                await wait_until(lambda: host.connections == 2 and host.clients)
                await asyncio.sleep(0.05)
                assert len(host.all("PLAYER_JOIN")) == 1


class TestPresence:
    @pytest.mark.asyncio
    async def test_away_reported_after_approval(self):
        async with running_host() as host:
            async with player_session(host) as session:
                await join_and_approve(host, session)
                assert session.presence.active
                session.report_presence(visible=False)
                away = await host.wait_for("PLAYER_AWAY")
                assert away["reason"] == "tab_hidden"
                assert away["teamName"] == "Owls"

    @pytest.mark.asyncio
    async def test_not_reported_before_approval(self):
        async with running_host() as host:
            async with player_session(host) as session:
                session.report_presence(visible=False)
                await asyncio.sleep(0.1)
                assert host.all("PLAYER_AWAY") == []
                assert session.snapshot()["presence"]["away"] is True

    @pytest.mark.asyncio
    async def test_reattached_after_reconnect(self):
        async with running_host() as host:
            async with player_session(host) as session:
                await join_and_approve(host, session)
                host.discovery_status = 503
                await host.drop_clients()
                await host.wait_for("PLAYER_JOIN", count=2)
                await wait_until(lambda: session.presence.active)


class TestBuzzers:
    @pytest.mark.asyncio
    async def test_buzzer_select_round_trip(self):
        async with running_host() as host:
            async with player_session(host) as session:
                await session.select_buzzer("air-horn")
                msg = await host.wait_for("PLAYER_BUZZER_SELECT")
                assert msg["buzzerSound"] == "air-horn"
                await host.broadcast("PLAYER_BUZZER_SELECT", deviceId="device-other", buzzerSound="kazoo")
                await wait_until(lambda: "device-other" in session.machine.selected_buzzers)
                assert session.machine.selected_buzzers["device-e2e"] == "air-horn"
