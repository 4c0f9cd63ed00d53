"""Scheduled message validation and persistence.

Creation and re-scheduling require an instant strictly in the future; status
changes are reserved to the background processor and always go through
:func:`transition`, which enforces the delivery state machine.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from recordhub import models
from recordhub.models import ALLOWED_TRANSITIONS, ScheduledMessageStatus

logger = logging.getLogger(__name__)

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d$")
PRIORITIES = ("low", "medium", "high")


class ScheduleValidationError(ValueError):
    """Invalid scheduled message input (maps to HTTP 400)."""
    pass


class ScheduledMessageNotFound(LookupError):
    pass


class InvalidTransitionError(Exception):
    """Status change not allowed by the delivery state machine."""
    pass


def parse_schedule(scheduled_date: str, scheduled_time: str) -> datetime:
    """Combine ``YYYY-MM-DD`` and ``HH:MM`` into a UTC instant."""
    if not isinstance(scheduled_date, str) or not DATE_PATTERN.match(scheduled_date):
        raise ScheduleValidationError("scheduledDate must be in YYYY-MM-DD format")
    if not isinstance(scheduled_time, str) or not TIME_PATTERN.match(scheduled_time):
        raise ScheduleValidationError("scheduledTime must be in HH:MM format (24-hour)")

    hours, minutes = scheduled_time.split(":")
    try:
        day = datetime.strptime(scheduled_date, "%Y-%m-%d")
    except ValueError:
        raise ScheduleValidationError(f"scheduledDate is not a valid date: {scheduled_date}") from None

    return day.replace(hour=int(hours), minute=int(minutes), tzinfo=timezone.utc)


def ensure_future(instant: datetime, now: datetime | None = None) -> None:
    now = now or datetime.now(timezone.utc)
    if instant <= now:
        raise ScheduleValidationError("Scheduled time must be in the future")


def validate_priority(priority: str) -> str:
    if priority not in PRIORITIES:
        raise ScheduleValidationError(f"Priority must be one of: {', '.join(PRIORITIES)}")
    return priority


def check_transition(current: str, target: str) -> None:
    current_status = ScheduledMessageStatus(current)
    target_status = ScheduledMessageStatus(target)
    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransitionError(f"Cannot move scheduled message from {current} to {target}")


async def transition(
    session: AsyncSession,
    message_id: int,
    current: ScheduledMessageStatus,
    target: ScheduledMessageStatus,
    **values: Any,
) -> bool:
    """Conditionally move a message from ``current`` to ``target``.

    The UPDATE only matches while the row is still in ``current``, so two
    processors can never both claim the same message.

    Returns:
        True if this call performed the transition.
    """
    check_transition(current.value, target.value)
    result = await session.execute(
        update(models.ScheduledMessage)
        .where(
            models.ScheduledMessage.id == message_id,
            models.ScheduledMessage.status == current.value,
        )
        .values(status=target.value, updated_at=models.utcnow(), **values)
    )
    await session.commit()
    return result.rowcount == 1


async def create_scheduled_message(
    session: AsyncSession,
    *,
    message: str,
    scheduled_date: str,
    scheduled_time: str,
    recipient: str | None = None,
    priority: str = "medium",
    now: datetime | None = None,
) -> models.ScheduledMessage:
    """Validate and persist a new pending message."""
    if not message or not message.strip():
        raise ScheduleValidationError("Message, scheduledDate, and scheduledTime are required")

    scheduled_at = parse_schedule(scheduled_date, scheduled_time)
    ensure_future(scheduled_at, now)
    validate_priority(priority)

    record = models.ScheduledMessage(
        message=message.strip(),
        day=scheduled_date,
        time=scheduled_time,
        scheduled_at=scheduled_at,
        recipient=recipient,
        priority=priority,
        status=ScheduledMessageStatus.PENDING.value,
    )
    session.add(record)
    await session.commit()
    await session.refresh(record)

    logger.info(f"Scheduled message {record.id} for {scheduled_at.isoformat()}")
    return record


async def get_scheduled_message(session: AsyncSession, message_id: int) -> models.ScheduledMessage:
    record = await session.get(models.ScheduledMessage, message_id)
    if record is None:
        raise ScheduledMessageNotFound(f"Scheduled message {message_id} not found")
    return record


async def list_scheduled_messages(
    session: AsyncSession,
    *,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[models.ScheduledMessage], int]:
    query = select(models.ScheduledMessage)
    count_query = select(func.count()).select_from(models.ScheduledMessage)
    if status:
        query = query.where(models.ScheduledMessage.status == status)
        count_query = count_query.where(models.ScheduledMessage.status == status)

    result = await session.execute(
        query.order_by(models.ScheduledMessage.scheduled_at)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    total = (await session.execute(count_query)).scalar_one()
    return list(result.scalars().all()), total


async def update_scheduled_message(
    session: AsyncSession,
    message_id: int,
    changes: dict[str, Any],
    *,
    now: datetime | None = None,
) -> models.ScheduledMessage:
    """Apply a partial update.

    ``changes`` uses the API field names (``scheduledDate``, ``scheduledTime``,
    ``message``, ``recipient``, ``priority``). If either half of the schedule
    changes, the combined pair is validated again and must be in the future.
    """
    record = await get_scheduled_message(session, message_id)
    if record.status != ScheduledMessageStatus.PENDING.value:
        raise InvalidTransitionError(
            f"Scheduled message {message_id} is {record.status} and can no longer be changed"
        )

    if "message" in changes and (not changes["message"] or not changes["message"].strip()):
        raise ScheduleValidationError("Message cannot be empty")
    if "priority" in changes:
        validate_priority(changes["priority"])

    if "scheduledDate" in changes or "scheduledTime" in changes:
        scheduled_date = changes.get("scheduledDate") or record.day
        scheduled_time = changes.get("scheduledTime") or record.time
        scheduled_at = parse_schedule(scheduled_date, scheduled_time)
        ensure_future(scheduled_at, now)
        record.day = scheduled_date
        record.time = scheduled_time
        record.scheduled_at = scheduled_at

    if "priority" in changes:
        record.priority = changes["priority"]
    if "message" in changes:
        record.message = changes["message"].strip()
    if "recipient" in changes:
        record.recipient = changes["recipient"]

    await session.commit()
    await session.refresh(record)
    return record


async def delete_scheduled_message(session: AsyncSession, message_id: int) -> None:
    record = await get_scheduled_message(session, message_id)
    await session.delete(record)
    await session.commit()
