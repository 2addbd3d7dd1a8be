"""Periodic polling of device metrics."""
from __future__ import annotations

import asyncio
import logging

from .config import MonitorSettings
from .device import DeviceCommandChannel

logger = logging.getLogger(__name__)


class DeviceMonitor:
    """Run one independent timer per metric query.

    Each timer issues its query whether or not the previous reply has
    arrived; there is no queuing between the three cadences.
    """

    def __init__(self, channel: DeviceCommandChannel, settings: MonitorSettings) -> None:
        self._channel = channel
        self._settings = settings
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def schedule(self) -> list[tuple[str, float]]:
        return [
            ("battery?", self._settings.battery_interval),
            ("time?", self._settings.flight_time_interval),
            ("speed?", self._settings.speed_interval),
        ]

    def start(self) -> None:
        """Start polling, replacing any timers that are already running."""

        self.stop()
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._poll(command, interval))
            for command, interval in self.schedule()
        ]
        logger.info("Device monitoring started")

    def stop(self) -> None:
        tasks = self._tasks
        self._tasks = []
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info("Device monitoring stopped")

    async def aclose(self) -> None:
        tasks = self._tasks
        self.stop()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _poll(self, command: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            result = self._channel.send_command(command)
            if not result:
                logger.debug("Monitoring query %r failed: %s", command, result.message)


__all__ = ["DeviceMonitor"]
