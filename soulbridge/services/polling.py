"""
SoulBridge Polling
Fixed-interval status polls as cancellable asyncio tasks.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from soulbridge.config import config
from soulbridge.errors import SoulBridgeError

logger = logging.getLogger(__name__)

# A tick returns True once the polled request is terminal
Tick = Callable[[], Awaitable[bool]]


class PollHandle:
    """One running poll series. ``stop()`` cancels it."""

    def __init__(self, key: str, task: asyncio.Task):
        self.key = key
        self.task = task

    @property
    def running(self) -> bool:
        return not self.task.done()

    def stop(self) -> None:
        if not self.task.done():
            self.task.cancel()


class Poller:
    """
    Runs at most one poll series per key.

    Errors inside a tick are logged and retried on the next tick, except
    non-retryable SoulBridgeErrors, which end the series. A tick returning
    True ends it too.
    """

    def __init__(self, interval: float = None):
        self.interval = interval if interval is not None else config.POLL_INTERVAL_SECONDS
        self._handles: Dict[str, PollHandle] = {}

    def start(self, key: str, tick: Tick) -> PollHandle:
        existing = self._handles.get(key)
        if existing is not None and existing.running:
            return existing

        task = asyncio.get_running_loop().create_task(self._run(key, tick))
        handle = PollHandle(key, task)
        self._handles[key] = handle
        return handle

    async def _run(self, key: str, tick: Tick) -> None:
        try:
            while True:
                try:
                    if await tick():
                        logger.info(f"[+] Poll {key} reached a terminal state")
                        return
                except asyncio.CancelledError:
                    raise
                except SoulBridgeError as e:
                    if not e.retryable:
                        logger.warning(f"[!] Poll {key} stopped: {e.reason}")
                        return
                    logger.warning(f"[!] Poll {key} failed, retrying: {e.reason}")
                except Exception as e:
                    logger.warning(f"[!] Poll {key} failed, retrying: {e}")
                await asyncio.sleep(self.interval)
        finally:
            if self._handles.get(key) is not None and self._handles[key].task is asyncio.current_task():
                del self._handles[key]

    def get(self, key: str) -> Optional[PollHandle]:
        return self._handles.get(key)

    def stop(self, key: str) -> None:
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.stop()

    async def stop_all(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            handle.stop()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)

    def __len__(self):
        return sum(1 for handle in self._handles.values() if handle.running)
