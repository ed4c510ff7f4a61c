"""Periodic latency measurement."""

import asyncio
import logging
from typing import Callable

from screenshare.protocols import LatencyProbe

logger = logging.getLogger(__name__)


class ZeroLatencyProbe:
    """Placeholder probe, always reports 0 ms."""

    async def measure(self) -> float:
        return 0.0


class LatencyPoller:
    """Runs a latency probe every `interval` seconds."""

    def __init__(
        self,
        probe: LatencyProbe,
        callback: Callable[[float], None],
        interval: float = 2.0,
    ):
        self._probe = probe
        self._callback = callback
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                latency_ms = await self._probe.measure()
            except Exception as e:
                logger.warning(f"Latency measurement failed: {e}")
                continue
            self._callback(latency_ms)

    async def stop(self) -> None:
        """Cancel polling. Safe to call more than once."""
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"Latency poller failed: {e}")
