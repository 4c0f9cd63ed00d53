import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from recordhub.models import ScheduledMessageStatus
from recordhub.scheduling import check_transition
from recordhub.workers.scheduler import ScheduledMessageProcessor, simulate_delivery

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeRepository:
    """In-memory queue that enforces the delivery state machine."""

    def __init__(self, *messages):
        self.messages = {m.id: m for m in messages}
        self.fail_query = False

    async def due_message_ids(self, now):
        if self.fail_query:
            raise RuntimeError("db down")
        return [
            m.id for m in sorted(self.messages.values(), key=lambda m: m.scheduled_at)
            if m.status == "pending" and m.scheduled_at <= now
        ]

    def _move(self, message_id, current, target):
        message = self.messages[message_id]
        if message.status != current:
            return False
        check_transition(current, target)
        message.status = target
        return True

    async def claim(self, message_id):
        if not self._move(message_id, "pending", "processing"):
            return None
        return self.messages[message_id]

    async def mark_sent(self, message_id):
        self._move(message_id, "processing", "sent")
        self.messages[message_id].sent_at = NOW

    async def mark_failed(self, message_id, error):
        self._move(message_id, "processing", "failed")
        self.messages[message_id].error_message = error


def _message(message_id, minutes_ago=1, status="pending"):
    return SimpleNamespace(
        id=message_id,
        message=f"message {message_id}",
        recipient=None,
        status=status,
        scheduled_at=NOW.replace(minute=60 - minutes_ago, hour=11),
        sent_at=None,
        error_message=None,
    )


def _processor(repository, deliver):
    return ScheduledMessageProcessor(repository, deliver, interval=60, clock=lambda: NOW)


async def _always(message):
    return True


async def _never(message):
    return False


# ---------------------------------------------------------------------------
# Ticks
# ---------------------------------------------------------------------------

class TestTick:

    @pytest.mark.asyncio
    async def test_due_message_is_sent(self):
        repository = FakeRepository(_message(1))

        handled = await _processor(repository, _always).tick()

        assert handled == 1
        assert repository.messages[1].status == "sent"
        assert repository.messages[1].sent_at == NOW

    @pytest.mark.asyncio
    async def test_future_message_is_left_pending(self):
        future = _message(1)
        future.scheduled_at = datetime(2026, 3, 10, 13, 0, tzinfo=timezone.utc)
        repository = FakeRepository(future)

        assert await _processor(repository, _always).tick() == 0
        assert repository.messages[1].status == "pending"

    @pytest.mark.asyncio
    async def test_unsuccessful_delivery_fails_message(self):
        repository = FakeRepository(_message(1))

        await _processor(repository, _never).tick()

        assert repository.messages[1].status == "failed"
        assert repository.messages[1].error_message == "Failed to send message"

    @pytest.mark.asyncio
    async def test_delivery_exception_is_recorded_and_loop_continues(self):
        async def flaky(message):
            if message.id == 1:
                raise ConnectionError("smtp refused")
            return True

        repository = FakeRepository(_message(1, minutes_ago=5), _message(2))

        handled = await _processor(repository, flaky).tick()

        assert handled == 2
        assert repository.messages[1].status == "failed"
        assert repository.messages[1].error_message == "smtp refused"
        assert repository.messages[2].status == "sent"

    @pytest.mark.asyncio
    async def test_store_error_after_delivery_fails_message(self):
        repository = FakeRepository(_message(1))

        async def broken_mark_sent(message_id):
            raise RuntimeError("connection reset")

        repository.mark_sent = broken_mark_sent

        handled = await _processor(repository, _always).tick()

        assert handled == 1
        assert repository.messages[1].status == "failed"
        assert repository.messages[1].error_message == "connection reset"

    @pytest.mark.asyncio
    async def test_settle_failure_does_not_escape(self):
        repository = FakeRepository(_message(1), _message(2))

        async def broken_mark_failed(message_id, error):
            raise RuntimeError("database went away")

        repository.mark_failed = broken_mark_failed

        async def only_second(message):
            return message.id == 2

        handled = await _processor(repository, only_second).tick()

        assert handled == 1
        assert repository.messages[2].status == "sent"

    @pytest.mark.asyncio
    async def test_query_failure_is_swallowed(self):
        repository = FakeRepository(_message(1))
        repository.fail_query = True

        assert await _processor(repository, _always).tick() == 0
        assert repository.messages[1].status == "pending"

    @pytest.mark.asyncio
    async def test_already_claimed_is_skipped(self):
        repository = FakeRepository(_message(1, status="processing"))
        processor = _processor(repository, _always)

        assert await processor.process_message(1) is None
        assert repository.messages[1].status == "processing"

    @pytest.mark.asyncio
    async def test_terminal_messages_never_reprocessed(self):
        repository = FakeRepository(_message(1))
        processor = _processor(repository, _always)

        await processor.tick()
        assert await processor.tick() == 0
        assert repository.messages[1].status == "sent"


# ---------------------------------------------------------------------------
# Single-flight scheduling
# ---------------------------------------------------------------------------

class TestScheduling:

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self):
        release = asyncio.Event()
        delivered = []

        async def slow(message):
            await release.wait()
            delivered.append(message.id)
            return True

        repository = FakeRepository(_message(1))
        processor = _processor(repository, slow)

        assert processor.schedule_tick() is True
        await asyncio.sleep(0)
        assert processor.tick_in_flight
        assert processor.schedule_tick() is False

        release.set()
        await processor._tick_task
        assert delivered == [1]
        assert not processor.tick_in_flight

    @pytest.mark.asyncio
    async def test_run_ticks_immediately_and_stops(self):
        repository = FakeRepository(_message(1))
        processor = _processor(repository, _always)

        runner = asyncio.create_task(processor.run())
        for _ in range(10):
            await asyncio.sleep(0)
        processor.stop()
        await asyncio.wait_for(runner, timeout=1)

        assert repository.messages[1].status == "sent"


class TestSimulateDelivery:

    @pytest.mark.asyncio
    async def test_outcome_follows_rng(self):
        message = _message(1)

        assert await simulate_delivery(message, delay=0, success_rate=0.95, rng=lambda: 0.5) is True
        assert await simulate_delivery(message, delay=0, success_rate=0.95, rng=lambda: 0.99) is False
