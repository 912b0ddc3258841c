import asyncio
import logging
from typing import Callable, Dict, Optional, Tuple

import config
from messages import PLAYER_ACTIVE, PLAYER_AWAY
from timer_sync import now_ms

logger = logging.getLogger(__name__)


class PresenceReporter:
    """Turns device visibility/focus flicker into PLAYER_AWAY / PLAYER_ACTIVE.

    Raw events are debounced per source, identical states re-sent inside the
    coalesce window are dropped, and a state that cannot be sent is parked in
    a single slot (newest wins) until the next flush.
    """

    def __init__(self, connection, identity,
                 debounce: float = config.PRESENCE_DEBOUNCE_SECONDS,
                 coalesce_window: float = config.PRESENCE_COALESCE_SECONDS,
                 clock: Callable[[], int] = now_ms):
        self.connection = connection
        self.identity = identity
        self.debounce = debounce
        self.coalesce_window_ms = int(coalesce_window * 1000)
        self.clock = clock

        self.is_visible = True
        self.is_focused = True
        self.active = False
        self.queued: Optional[Tuple[bool, str]] = None  # (away, reason)
        self.last_sent: Optional[Tuple[bool, int]] = None  # (away, timestamp ms)
        self._debounce_tasks: Dict[str, asyncio.Task] = {}

    @property
    def away(self) -> bool:
        return not self.is_visible or not self.is_focused

    def attach(self):
        """Start reporting; queued state is flushed by the caller after connect."""
        if not self.active:
            self.active = True
            logger.info("Presence reporting attached for team '%s'", self.identity.team_name)

    def detach(self):
        """Stop reporting and drop pending debounce timers (the queue survives)."""
        if self.active:
            logger.info("Presence reporting detached")
        self.active = False
        for task in self._debounce_tasks.values():
            task.cancel()
        self._debounce_tasks.clear()

    def report_visibility(self, visible: bool):
        self.is_visible = visible
        if not self.active:
            return
        reason = "tab_visible" if visible else "tab_hidden"
        self._debounced("visibility", lambda: self._visibility_settled(visible, reason))

    def report_focus(self, focused: bool):
        self.is_focused = focused
        if not self.active:
            return
        self._debounced("focus", lambda: self._focus_settled(focused))

    async def _visibility_settled(self, visible: bool, reason: str):
        await self.send_state(not visible or not self.is_focused, reason)

    async def _focus_settled(self, focused: bool):
        if focused:
            # Regaining focus only counts when the page is also visible
            if self.is_visible:
                await self.send_state(False, "focus_gained")
        else:
            await self.send_state(True, "focus_lost")

    def _debounced(self, source: str, settle: Callable):
        existing = self._debounce_tasks.pop(source, None)
        if existing:
            existing.cancel()
        self._debounce_tasks[source] = asyncio.create_task(self._after_debounce(source, settle))

    async def _after_debounce(self, source: str, settle: Callable):
        await asyncio.sleep(self.debounce)
        self._debounce_tasks.pop(source, None)
        await settle()

    async def send_state(self, away: bool, reason: str, is_retry: bool = False) -> bool:
        if not self.connection.is_open:
            self.queued = (away, reason)
            logger.info("Connection not open, queued presence away=%s (%s)", away, reason)
            return False

        now = self.clock()
        last = self.last_sent
        if (not is_retry and last is not None and last[0] == away
                and now - last[1] < self.coalesce_window_ms):
            logger.debug("Suppressed duplicate presence away=%s (%s)", away, reason)
            return False

        msg_type = PLAYER_AWAY if away else PLAYER_ACTIVE
        sent = await self.connection.send(self.identity.envelope(msg_type, reason=reason))
        if not sent:
            self.queued = (away, reason)
            return False

        self.last_sent = (away, now)
        # Anything still queued is older than what was just delivered
        self.queued = None
        logger.info("Sent %s (%s)", msg_type, reason)
        return True

    async def flush(self) -> bool:
        """Retry the queued state once, bypassing duplicate suppression."""
        if self.queued is None:
            return False
        away, reason = self.queued
        self.queued = None
        return await self.send_state(away, reason, is_retry=True)
