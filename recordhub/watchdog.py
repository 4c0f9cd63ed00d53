"""CPU watchdog.

The watchdog itself only samples and decides; what happens on a breach is the
``on_breach`` callback's business. :func:`restart_self` is the default
callback used by the API process: graceful shutdown, then a detached
replacement started from the same command line.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from typing import Callable

import psutil

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CpuTimes:
    """Aggregate CPU ticks across all cores."""
    idle: float
    total: float


def read_cpu_times() -> CpuTimes:
    times = psutil.cpu_times()
    return CpuTimes(idle=times.idle, total=sum(times))


def cpu_utilization(previous: CpuTimes | None, current: CpuTimes) -> float:
    """Busy percentage between two samples (since boot when ``previous`` is None)."""
    idle = current.idle - (previous.idle if previous else 0.0)
    total = current.total - (previous.total if previous else 0.0)
    if total <= 0:
        return 0.0
    return max(0.0, min(100.0, 100.0 * (1.0 - idle / total)))


class ProcessWatchdog:
    """Samples CPU every ``interval`` seconds and calls ``on_breach`` once."""

    def __init__(
        self,
        on_breach: Callable[[float], None],
        *,
        threshold: float = 70.0,
        interval: float = 5.0,
        sampler: Callable[[], CpuTimes] = read_cpu_times,
    ):
        self.on_breach = on_breach
        self.threshold = threshold
        self.interval = interval
        self.sampler = sampler
        self.restart_in_flight = False
        self._previous: CpuTimes | None = None
        self._task: asyncio.Task | None = None

    def check(self) -> float:
        """Take one sample and trigger the callback on a breach."""
        current = self.sampler()
        usage = cpu_utilization(self._previous, current)
        self._previous = current

        logger.debug(f"Current CPU usage: {usage:.2f}%")

        if usage >= self.threshold and not self.restart_in_flight:
            logger.warning(
                f"CPU usage ({usage:.2f}%) exceeded threshold ({self.threshold:g}%). Initiating restart"
            )
            self.restart_in_flight = True
            try:
                self.on_breach(usage)
            except Exception as e:
                logger.error(f"Error during restart: {e}", exc_info=True)
                self.restart_in_flight = False
        return usage

    async def _loop(self) -> None:
        while True:
            try:
                self.check()
            except Exception as e:
                logger.error(f"Error checking CPU usage: {e}")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("CPU monitoring is already running")
            return
        logger.info(f"Starting CPU monitoring (threshold: {self.threshold:g}%)")
        self._previous = self.sampler()
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("CPU monitoring stopped")

    def status(self) -> dict:
        return {
            "isMonitoring": self._task is not None and not self._task.done(),
            "threshold": self.threshold,
            "isRestarting": self.restart_in_flight,
        }


def spawn_replacement() -> None:
    """Start a detached copy of the current command line, then exit."""
    logger.info("Starting new server instance...")
    subprocess.Popen(
        [sys.executable, *sys.argv],
        start_new_session=True,
        close_fds=True,
    )
    os._exit(0)


def restart_self(grace_seconds: float = 3.0) -> Callable[[float], None]:
    """Build the default breach callback.

    SIGTERM lets uvicorn drain and run the lifespan shutdown; the non-daemon
    timer keeps the interpreter alive until the replacement is spawned.
    """

    def _restart(usage: float) -> None:
        logger.warning(f"Initiating server restart due to high CPU usage ({usage:.2f}%)")
        timer = threading.Timer(grace_seconds, spawn_replacement)
        timer.daemon = False
        timer.start()
        os.kill(os.getpid(), signal.SIGTERM)

    return _restart
