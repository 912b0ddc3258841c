import asyncio
import inspect
import json
import logging
from typing import Any, Callable, Optional

import requests
import websockets
from websockets.exceptions import ConnectionClosed

import config
from messages import MessageParseError, parse_host_message

logger = logging.getLogger(__name__)

TRANSIENT_ERROR = "Connection error. Host may not be available."
TERMINAL_ERROR = "Unable to connect to host after multiple attempts."

_UNSET: Any = object()


def backoff_delay_ms(attempt: int, base_ms: int = config.RECONNECT_BASE_DELAY_MS,
                     max_ms: int = config.RECONNECT_MAX_DELAY_MS) -> int:
    """Exponential backoff for 0-indexed attempt n: min(base * 2^n, max)."""
    return min(base_ms * (2 ** attempt), max_ms)


def discover_ws_url(base_url: str, timeout: float = config.DISCOVERY_TIMEOUT) -> Optional[str]:
    """Ask the host's discovery endpoint for its WebSocket URL (blocking)."""
    url = base_url.rstrip("/") + config.DISCOVERY_PATH
    response = requests.get(url, timeout=timeout)
    if response.status_code != 200:
        logger.warning("Host discovery at %s returned HTTP %d", url, response.status_code)
        return None
    info = response.json()
    ws_url = info.get("wsUrl") if isinstance(info, dict) else None
    if not ws_url:
        logger.warning("Host discovery at %s returned no wsUrl", url)
        return None
    logger.info("Discovered host at %s (ip=%s, port=%s)", ws_url, info.get("localIP"), info.get("port"))
    return ws_url


class ConnectionManager:
    """Owns the single host connection and keeps it alive.

    Callbacks are plain attributes read at the moment they fire, so they can
    be swapped at any time without touching the live connection.
    """

    def __init__(self, url: Optional[str] = None, discovery_url: Optional[str] = _UNSET,
                 on_message: Optional[Callable] = None,
                 on_connect: Optional[Callable] = None,
                 on_disconnect: Optional[Callable] = None,
                 on_error: Optional[Callable] = None,
                 max_attempts: int = config.MAX_RECONNECT_ATTEMPTS,
                 base_delay_ms: int = config.RECONNECT_BASE_DELAY_MS,
                 max_delay_ms: int = config.RECONNECT_MAX_DELAY_MS,
                 connect_timeout: float = config.CONNECT_TIMEOUT,
                 discovery_timeout: float = config.DISCOVERY_TIMEOUT,
                 initial_delay: float = config.INITIAL_CONNECT_DELAY):
        self.fallback_url = url or config.fallback_ws_url()
        self.discovery_url = config.HOST_INFO_URL if discovery_url is _UNSET else discovery_url
        self.on_message = on_message
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        self.on_error = on_error
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.connect_timeout = connect_timeout
        self.discovery_timeout = discovery_timeout
        self.initial_delay = initial_delay

        self.state = "closed"  # connecting, open, closing, closed
        self.url: Optional[str] = None
        self.attempts = 0
        self.error: Optional[str] = None
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def is_open(self) -> bool:
        return self.state == "open" and self._ws is not None

    @property
    def gave_up(self) -> bool:
        return self.error == TERMINAL_ERROR

    def start(self) -> asyncio.Task:
        """Start the connect/reconnect loop in the background."""
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        self._stopping = True
        ws = self._ws
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if ws is not None:
            self.state = "closing"
            try:
                await ws.close()
            except Exception:
                logger.debug("Error closing host connection", exc_info=True)
        self._ws = None
        self.state = "closed"

    async def resolve_url(self) -> str:
        if self.discovery_url:
            try:
                ws_url = await asyncio.to_thread(discover_ws_url, self.discovery_url, self.discovery_timeout)
            except (requests.RequestException, ValueError) as e:
                logger.warning("Host discovery failed (%s), using %s", e, self.fallback_url)
                ws_url = None
            if ws_url:
                return ws_url
        return self.fallback_url

    async def run(self):
        await asyncio.sleep(self.initial_delay)
        logger.info("Starting player connection process")
        while not self._stopping:
            await self._connect_once()
            if self._stopping:
                break

            self.attempts += 1
            if self.attempts >= self.max_attempts:
                self.error = TERMINAL_ERROR
                logger.error("Max connection attempts reached (%d). Cannot connect to host.", self.max_attempts)
                await self._emit("on_error", self.error)
                return

            delay_ms = backoff_delay_ms(self.attempts - 1, self.base_delay_ms, self.max_delay_ms)
            logger.info("Scheduling reconnect in %dms (attempt %d/%d)", delay_ms, self.attempts, self.max_attempts)
            await asyncio.sleep(delay_ms / 1000)

    async def _connect_once(self):
        """Run one connection from handshake to close."""
        self.state = "connecting"
        self.url = await self.resolve_url()
        logger.info("[Connection attempt %d/%d] Connecting to %s",
                    self.attempts + 1, self.max_attempts, self.url)
        try:
            ws = await asyncio.wait_for(
                websockets.connect(self.url, open_timeout=None, max_size=config.MAX_WS_MESSAGE_SIZE),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Connection attempt timed out after %ss", self.connect_timeout)
            await self._handle_failure()
            return
        except Exception as e:
            logger.warning("Connection attempt failed: %s", e)
            await self._handle_failure()
            return

        self._ws = ws
        self.state = "open"
        self.attempts = 0
        self.error = None
        logger.info("Player connected to host")
        await self._emit("on_connect", ws)

        try:
            async for raw in ws:
                await self._dispatch(raw)
        except ConnectionClosed as e:
            logger.info("Host connection closed: %s", e)
        except Exception:
            logger.exception("Host connection error")
        finally:
            self._ws = None
            self.state = "closed"

        logger.warning("Disconnected from host")
        await self._emit("on_disconnect")

    async def _handle_failure(self):
        self.state = "closed"
        self.error = TRANSIENT_ERROR
        await self._emit("on_disconnect")

    async def _dispatch(self, raw):
        try:
            message = parse_host_message(raw)
        except MessageParseError as e:
            logger.warning("Dropping malformed host message: %s", e)
            return
        await self._emit("on_message", message)

    async def _emit(self, name: str, *args):
        callback = getattr(self, name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Error in %s callback", name)

    async def send(self, message: dict) -> bool:
        """Send one message if the connection is open right now."""
        ws = self._ws
        if ws is None or self.state != "open":
            logger.warning("Cannot send %s - connection not open (state: %s)", message.get("type"), self.state)
            return False
        try:
            await ws.send(json.dumps(message))
            return True
        except ConnectionClosed:
            logger.warning("Send of %s failed - connection closed", message.get("type"))
            return False
        except Exception:
            logger.exception("Send of %s failed", message.get("type"))
            return False

    def status(self) -> dict:
        return {
            "state": self.state,
            "url": self.url,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "error": self.error,
        }
