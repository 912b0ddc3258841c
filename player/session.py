import asyncio
import logging
from typing import Any, Callable, List, Optional

from connection_manager import ConnectionManager
from identity import IdentityStore, SessionIdentity
from messages import PLAYER_BUZZER_SELECT, TEAM_PHOTO_UPDATE
from presence import PresenceReporter
from protocol import ActionRejected, PlayerStateMachine, Submission

logger = logging.getLogger(__name__)


class PlayerSession:
    """Wires one connection, state machine and presence reporter together.

    The connection's callbacks point at this session; the state machine and
    presence reporter send through the same connection.
    """

    def __init__(self, connection: Optional[ConnectionManager] = None,
                 identity: Optional[SessionIdentity] = None,
                 machine: Optional[PlayerStateMachine] = None,
                 presence: Optional[PresenceReporter] = None):
        self.identity = identity or SessionIdentity.load(IdentityStore())
        self.connection = connection or ConnectionManager()
        self.machine = machine or PlayerStateMachine(self.connection, self.identity)
        self.presence = presence or PresenceReporter(self.connection, self.identity)
        self.listeners: List[Callable[[], None]] = []
        self._flush_task: Optional[asyncio.Task] = None

        self.connection.on_message = self.machine.handle_message
        self.connection.on_connect = self._handle_connect
        self.connection.on_disconnect = self._handle_disconnect
        self.connection.on_error = self._handle_error
        self.machine.listeners.append(self._changed)

    async def start(self):
        logger.info("Starting player session (device %s)", self.identity.device_id)
        self.connection.start()

    async def stop(self):
        self.presence.detach()
        self.machine.close()
        if self._flush_task:
            self._flush_task.cancel()
        await self.connection.stop()
        logger.info("Player session stopped")

    # ------------------------------------------------------------------
    # Connection callbacks
    # ------------------------------------------------------------------

    def _should_rejoin(self) -> bool:
        return (self.machine.approved and bool(self.identity.team_name)
                and self.machine.phase not in ("team-entry", "declined"))

    async def _handle_connect(self, ws):
        if self._should_rejoin():
            logger.info("Reconnected - rejoining as '%s'", self.identity.team_name)
            await self.machine.send_join()
        self._sync_presence()
        if self.presence.active:
            await self.presence.flush()
        self._notify()

    async def _handle_disconnect(self):
        self.presence.detach()
        self._notify()

    async def _handle_error(self, error: str):
        logger.error("Connection gave up: %s", error)
        self._notify()

    # ------------------------------------------------------------------
    # State change fan-out
    # ------------------------------------------------------------------

    def _sync_presence(self):
        wanted = self.connection.is_open and self.machine.approved and bool(self.identity.team_name)
        if wanted and not self.presence.active:
            self.presence.attach()
            if self.presence.queued is not None:
                self._flush_task = asyncio.create_task(self.presence.flush())
        elif not wanted and self.presence.active:
            self.presence.detach()

    def _changed(self):
        self._sync_presence()
        self._notify()

    def _notify(self):
        for listener in list(self.listeners):
            try:
                listener()
            except Exception:
                logger.exception("Session listener failed")

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def submit_team_name(self, name: str, team_photo: Optional[str] = None) -> bool:
        return await self.machine.submit_team_name(name, team_photo)

    def retry_team_entry(self):
        self.machine.retry_team_entry()

    async def submit_answer(self, answer: Any) -> Submission:
        return await self.machine.submit_answer(answer)

    async def update_team_photo(self, photo_data: str) -> bool:
        if not self.identity.team_name:
            raise ActionRejected("Join with a team name before setting a photo")
        self.identity.team_photo = photo_data
        self._notify()
        return await self.connection.send(self.identity.envelope(TEAM_PHOTO_UPDATE, photoData=photo_data))

    async def select_buzzer(self, buzzer_sound: str) -> bool:
        self.identity.buzzer_sound = buzzer_sound
        self.machine.selected_buzzers[self.identity.device_id] = buzzer_sound
        self._notify()
        return await self.connection.send(self.identity.envelope(PLAYER_BUZZER_SELECT, buzzerSound=buzzer_sound))

    def report_presence(self, visible: Optional[bool] = None, focused: Optional[bool] = None):
        if visible is not None:
            self.presence.report_visibility(visible)
        if focused is not None:
            self.presence.report_focus(focused)

    def snapshot(self) -> dict:
        data = self.machine.snapshot()
        data["connection"] = self.connection.status()
        data["identity"] = self.identity.snapshot()
        data["presence"] = {
            "active": self.presence.active,
            "away": self.presence.away,
            "queued": self.presence.queued is not None,
        }
        return data
