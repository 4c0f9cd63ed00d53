"""Scheduled message processor.

Polls for due ``pending`` messages and drives each one through
``pending -> processing -> sent | failed``. Runs in its own spawned process
(see :func:`start_scheduler_process`) with its own database engine.

Ticks fire on a fixed interval and immediately on start. A tick that finds
the previous one still running is skipped, so the same due message is never
processed by two overlapping ticks. A failing message never stops the loop
and is not retried.
"""
from __future__ import annotations

import asyncio
import logging
import multiprocessing as mp
import os
import random
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recordhub import models
from recordhub.config import settings
from recordhub.db import create_worker_engine, session_factory_for
from recordhub.logging_config import setup_logging
from recordhub.models import ScheduledMessageStatus
from recordhub.scheduling import transition

logger = logging.getLogger(__name__)

DeliverFn = Callable[[models.ScheduledMessage], Awaitable[bool]]


class MessageRepository(Protocol):
    async def due_message_ids(self, now: datetime) -> list[int]: ...

    async def claim(self, message_id: int) -> models.ScheduledMessage | None: ...

    async def mark_sent(self, message_id: int) -> None: ...

    async def mark_failed(self, message_id: int, error: str) -> None: ...


class SqlMessageRepository:
    """Message queue access with one short-lived session per operation."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def due_message_ids(self, now: datetime) -> list[int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(models.ScheduledMessage.id)
                .where(
                    models.ScheduledMessage.status == ScheduledMessageStatus.PENDING.value,
                    models.ScheduledMessage.scheduled_at <= now,
                )
                .order_by(models.ScheduledMessage.scheduled_at)
            )
            return list(result.scalars().all())

    async def claim(self, message_id: int) -> models.ScheduledMessage | None:
        async with self.session_factory() as session:
            claimed = await transition(
                session, message_id, ScheduledMessageStatus.PENDING, ScheduledMessageStatus.PROCESSING
            )
            if not claimed:
                return None
            return await session.get(models.ScheduledMessage, message_id)

    async def mark_sent(self, message_id: int) -> None:
        async with self.session_factory() as session:
            await transition(
                session,
                message_id,
                ScheduledMessageStatus.PROCESSING,
                ScheduledMessageStatus.SENT,
                sent_at=models.utcnow(),
            )

    async def mark_failed(self, message_id: int, error: str) -> None:
        async with self.session_factory() as session:
            await transition(
                session,
                message_id,
                ScheduledMessageStatus.PROCESSING,
                ScheduledMessageStatus.FAILED,
                error_message=error,
            )


async def simulate_delivery(
    message: models.ScheduledMessage,
    *,
    delay: float,
    success_rate: float,
    rng: Callable[[], float] = random.random,
) -> bool:
    """Stand-in for a real delivery channel (email, SMS, webhook)."""
    logger.info(f"Sending message to {message.recipient or 'default recipient'}: {message.message}")
    await asyncio.sleep(delay)
    return rng() < success_rate


class ScheduledMessageProcessor:
    """Timer-driven polling loop with a single-flight tick."""

    def __init__(
        self,
        repository: MessageRepository,
        deliver: DeliverFn,
        *,
        interval: float = 60.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repository = repository
        self.deliver = deliver
        self.interval = interval
        self.clock = clock
        self._tick_task: asyncio.Task | None = None
        self._stop: asyncio.Event | None = None

    @property
    def tick_in_flight(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    def schedule_tick(self) -> bool:
        """Start a tick unless one is still running; returns whether it started."""
        if self.tick_in_flight:
            logger.warning("Previous tick still running, skipping this one")
            return False
        self._tick_task = asyncio.create_task(self.tick())
        return True

    async def run(self) -> None:
        self._stop = asyncio.Event()
        logger.info(f"Starting scheduled message processor (interval: {self.interval:g}s)")

        while not self._stop.is_set():
            self.schedule_tick()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        if self._tick_task is not None:
            await self._tick_task
        logger.info("Scheduled message processor stopped")

    def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()

    async def tick(self) -> int:
        """Process every message due now; returns how many were handled."""
        try:
            due_ids = await self.repository.due_message_ids(self.clock())
        except Exception as e:
            logger.error(f"Error querying scheduled messages: {e}", exc_info=True)
            return 0

        logger.info(f"Found {len(due_ids)} messages due for processing")

        handled = 0
        for message_id in due_ids:
            try:
                if await self.process_message(message_id) is not None:
                    handled += 1
            except Exception as e:
                logger.error(f"Error processing message {message_id}: {e}", exc_info=True)
        return handled

    async def process_message(self, message_id: int) -> ScheduledMessageStatus | None:
        """Claim, deliver and settle one message.

        Returns:
            The final status, or None if another tick already claimed it or
            the failure could not be recorded.
        """
        message = await self.repository.claim(message_id)
        if message is None:
            logger.info(f"Message {message_id} already claimed, skipping")
            return None

        logger.info(f"Processing scheduled message: {message_id}")
        try:
            delivered = await self.deliver(message)
        except Exception as e:
            logger.error(f"Error delivering message {message_id}: {e}", exc_info=True)
            return await self._settle_failed(message_id, str(e) or e.__class__.__name__)

        if not delivered:
            logger.error(f"Failed to send message {message_id}")
            return await self._settle_failed(message_id, "Failed to send message")

        try:
            await self.repository.mark_sent(message_id)
        except Exception as e:
            logger.error(f"Error marking message {message_id} as sent: {e}", exc_info=True)
            return await self._settle_failed(message_id, str(e) or e.__class__.__name__)

        logger.info(f"Message {message_id} sent successfully")
        return ScheduledMessageStatus.SENT

    async def _settle_failed(self, message_id: int, error: str) -> ScheduledMessageStatus | None:
        # A claimed message must end in sent or failed.
        try:
            await self.repository.mark_failed(message_id, error)
        except Exception as e:
            logger.error(f"Could not mark message {message_id} as failed: {e}", exc_info=True)
            return None
        return ScheduledMessageStatus.FAILED


async def _serve(stop_event: Any) -> None:
    engine = create_worker_engine()
    processor = ScheduledMessageProcessor(
        SqlMessageRepository(session_factory_for(engine)),
        partial(
            simulate_delivery,
            delay=settings.scheduler.delivery_delay_seconds,
            success_rate=settings.scheduler.success_rate,
        ),
        interval=settings.scheduler.interval_seconds,
    )

    async def watch_stop() -> None:
        # Bounded waits keep the executor thread from outliving the loop.
        while not await asyncio.to_thread(stop_event.wait, 1.0):
            pass
        processor.stop()

    watcher = asyncio.create_task(watch_stop())
    try:
        await processor.run()
    finally:
        watcher.cancel()
        await engine.dispose()


def scheduler_worker_main(stop_event: Any) -> None:
    """Process entry point for the scheduled message processor."""
    setup_logging()
    logger.info(f"Scheduled message processor process {os.getpid()} starting")
    asyncio.run(_serve(stop_event))


def start_scheduler_process() -> tuple[Any, Any]:
    """Spawn the processor; returns ``(process, stop_event)``."""
    ctx = mp.get_context("spawn")
    stop_event = ctx.Event()
    process = ctx.Process(
        target=scheduler_worker_main,
        args=(stop_event,),
        name="scheduled-message-processor",
        daemon=True,
    )
    process.start()
    logger.info(f"Started scheduled message processor {process.pid}")
    return process, stop_event


def stop_scheduler_process(process: Any, stop_event: Any, timeout: float = 10.0) -> None:
    stop_event.set()
    process.join(timeout=timeout)
    if process.is_alive():
        logger.warning(f"Scheduled message processor {process.pid} did not stop, terminating")
        process.terminate()
        process.join(timeout=5)
    elif process.exitcode not in (0, None):
        logger.error(f"Scheduled message processor stopped with exit code {process.exitcode}")
