import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

import config


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds (the host's timestamp unit)."""
    return int(time.time() * 1000)


@dataclass
class TimerState:
    total_length: int = config.DEFAULT_TIMER_SECONDS
    remaining: int = 0
    running: bool = False
    locked: bool = False
    host_start_timestamp: Optional[float] = None  # host epoch ms; latency only


class TimerSynchronizer:
    """Locally ticking countdown anchored to a host-issued start timestamp.

    The visible countdown free-runs on a local cadence; host TIMER messages
    only correct ``remaining``. Response latency is always measured against
    the host's start timestamp so every player shares one origin.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self.clock = clock
        self.state = TimerState()

    def start(self, duration_seconds: int, host_start_timestamp: Optional[float] = None):
        self.state.total_length = duration_seconds
        self.state.remaining = duration_seconds
        self.state.running = True
        if host_start_timestamp:
            self.state.host_start_timestamp = host_start_timestamp

    def seed(self, total_length: int, remaining: int, running: bool = True):
        """Adopt a countdown already in progress (late joiners)."""
        self.state.total_length = total_length
        self.state.remaining = max(0, remaining)
        self.state.running = running

    def tick(self) -> int:
        if self.state.running and self.state.remaining > 0:
            self.state.remaining -= 1
        return self.state.remaining

    def set_remaining(self, seconds: int):
        self.state.remaining = max(0, seconds)

    def stop(self):
        self.state.running = False

    def lock(self):
        self.state.running = False
        self.state.locked = True

    def reset(self):
        self.state = TimerState()

    def response_latency(self, submit_timestamp: Optional[float] = None) -> int:
        """Milliseconds between the host's timer start and a local submit, or 0."""
        start = self.state.host_start_timestamp
        if not start:
            return 0
        submitted = submit_timestamp if submit_timestamp is not None else self.clock()
        return int(submitted - start)

    def snapshot(self) -> dict:
        return asdict(self.state)
