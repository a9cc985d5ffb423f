"""
Liveness: server heartbeat, client reconnect backoff, latency window.
"""

import asyncio
from collections import deque
from typing import Optional

import messages
from remote_common import HEARTBEAT_INTERVAL, _task_done, log_debug, log_info


class HeartbeatMonitor:
    """Every `interval` seconds: terminate sessions that ignored the last
    ping, then ping everyone left. Any inbound message counts as an answer."""

    def __init__(self, router, interval: float = HEARTBEAT_INTERVAL):
        self.router = router
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running():
            return
        self._task = asyncio.create_task(self._run(), name="heartbeat")
        self._task.add_done_callback(_task_done)
        log_debug(f"[Heartbeat] Every {self.interval}s")

    async def stop(self):
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()

    async def tick(self):
        registry = self.router.registry
        # Terminate first so a dead session is never pinged twice
        for session in registry.all_sessions():
            if not session.alive:
                log_info(f"[Heartbeat] Terminating dead session {session.session_id}")
                await self.router.close_session(session.session_id)
        for session in registry.all_sessions():
            registry.mark_pinged(session.session_id)
            await self.router.send(session.session_id, messages.ping())


class ReconnectPolicy:
    """delay(n) = min(base * growth**(n-1), cap) seconds for attempt n >= 1;
    gives up after max_attempts until reset()."""

    def __init__(self, base: float = 1.0, growth: float = 1.5, cap: float = 10.0, max_attempts: int = 10):
        self.base = base
        self.growth = growth
        self.cap = cap
        self.max_attempts = max_attempts
        self.attempts = 0

    def delay(self, attempt: int) -> float:
        return min(self.base * self.growth ** (attempt - 1), self.cap)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_delay(self) -> Optional[float]:
        if self.exhausted:
            return None
        self.attempts += 1
        return self.delay(self.attempts)

    def reset(self):
        self.attempts = 0


class LatencyTracker:
    def __init__(self, window: int = 10):
        self.samples = deque(maxlen=window)

    def add(self, latency_ms: float):
        self.samples.append(max(0.0, latency_ms))

    @property
    def average(self) -> Optional[int]:
        if not self.samples:
            return None
        return round(sum(self.samples) / len(self.samples))

    def clear(self):
        self.samples.clear()
