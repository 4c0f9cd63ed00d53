"""FastAPI app: batch upload, scheduled messages, policy lookups and health.

Every response is a JSON envelope with a ``success`` flag; failures carry
``message`` and ``error`` (plus ``stack`` outside production).
"""
from __future__ import annotations

import logging
import time
import traceback
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Generic, Literal, TypeVar

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from . import models
from .config import settings
from .db import engine, get_session, ping
from .logging_config import setup_logging
from .pipelines.ingest import IngestionError, UploadValidationError, ingest_upload
from .scheduling import (
    InvalidTransitionError,
    ScheduledMessageNotFound,
    ScheduleValidationError,
    create_scheduled_message,
    delete_scheduled_message,
    get_scheduled_message,
    list_scheduled_messages,
    update_scheduled_message,
)
from .watchdog import ProcessWatchdog, restart_self
from .workers.scheduler import start_scheduler_process, stop_scheduler_process

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STARTED_AT = time.monotonic()


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class Envelope(CamelModel, Generic[T]):
    success: bool = True
    message: str | None = None
    data: T | None = None


class ErrorResponse(BaseModel):
    """Error response."""
    success: bool = False
    message: str
    error: str | None = None
    stack: list[str] | None = None


class IngestionSummaryDTO(CamelModel):
    """Counts of entities created by one upload plus row-level errors."""
    agents_created: int
    users_created: int
    accounts_created: int
    categories_created: int
    carriers_created: int
    policies_created: int
    errors: list[str] = Field(default_factory=list)


class ScheduledMessageCreate(CamelModel):
    """Create scheduled message request; presence is checked by the handler."""
    message: str | None = None
    scheduled_date: str | None = None
    scheduled_time: str | None = None
    recipient: str | None = None
    priority: str = "medium"


class ScheduledMessageUpdate(CamelModel):
    """Partial update; only the fields sent are applied."""
    message: str | None = None
    scheduled_date: str | None = None
    scheduled_time: str | None = None
    recipient: str | None = None
    priority: str | None = None


class ScheduledMessageDTO(CamelModel):
    id: int
    message: str
    day: str
    time: str
    scheduled_at: datetime
    recipient: str | None = None
    priority: str
    status: Literal["pending", "processing", "sent", "failed"]
    error_message: str | None = None
    sent_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class ScheduledMessagePage(CamelModel):
    messages: list[ScheduledMessageDTO]
    pagination: Pagination


class PolicyDTO(CamelModel):
    id: int
    policy_number: str
    policy_type: str
    policy_mode: str
    premium_amount: float
    premium_amount_written: float
    policy_start_date: date | None = None
    policy_end_date: date | None = None
    producer: str | None = None
    csr: str | None = None
    has_active_client_policy: bool
    agent_name: str
    carrier_name: str
    category_name: str
    customer_email: str


class PolicyPage(CamelModel):
    policies: list[PolicyDTO]
    pagination: Pagination


class PolicyStats(CamelModel):
    agents: int
    customers: int
    accounts: int
    categories: int
    carriers: int
    policies: int
    active_policies: int
    average_policies_per_user: float
    total_premium_amount: float


class HealthResponse(CamelModel):
    """Health check response."""
    status: str
    version: str
    environment: str
    uptime_seconds: float
    database: str
    watchdog: dict[str, Any] | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    logger.info("Application starting up")

    scheduler = None
    if settings.scheduler.enabled:
        scheduler = start_scheduler_process()

    app.state.watchdog = None
    if settings.watchdog.enabled:
        watchdog = ProcessWatchdog(
            restart_self(settings.watchdog.grace_seconds),
            threshold=settings.watchdog.threshold_percent,
            interval=settings.watchdog.interval_seconds,
        )
        watchdog.start()
        app.state.watchdog = watchdog

    yield

    # Shutdown
    logger.info("Application shutting down")
    if app.state.watchdog is not None:
        await app.state.watchdog.stop()
    if scheduler is not None:
        stop_scheduler_process(*scheduler, timeout=settings.shutdown_timeout_seconds)
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Record management backend with isolated batch ingestion",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(status_code: int, message: str, exc: Exception, error: str | None = None) -> JSONResponse:
    body = ErrorResponse(message=message, error=error if error is not None else str(exc))
    if not settings.is_production:
        body.stack = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


# Exception handlers
@app.exception_handler(UploadValidationError)
async def upload_validation_handler(request: Request, exc: UploadValidationError):
    """Reject uploads before anything is staged or spawned."""
    logger.warning(f"Upload rejected: {exc}")
    return error_response(status.HTTP_400_BAD_REQUEST, str(exc), exc, error="upload_validation_error")


@app.exception_handler(IngestionError)
async def ingestion_error_handler(request: Request, exc: IngestionError):
    """Handle run-fatal ingestion failures (worker failure, crash, timeout)."""
    logger.error(f"Ingestion error: {exc}")
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Error processing file", exc)


@app.exception_handler(ScheduleValidationError)
async def schedule_validation_handler(request: Request, exc: ScheduleValidationError):
    return error_response(status.HTTP_400_BAD_REQUEST, str(exc), exc, error="validation_error")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        "Invalid request",
        exc,
        error="; ".join(f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()),
    )


@app.exception_handler(ScheduledMessageNotFound)
async def not_found_handler(request: Request, exc: ScheduledMessageNotFound):
    return error_response(status.HTTP_404_NOT_FOUND, "Scheduled message not found", exc)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return error_response(status.HTTP_409_CONFLICT, str(exc), exc, error="invalid_state")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", exc)


@app.get("/health", response_model=Envelope[HealthResponse])
async def health(request: Request) -> Envelope[HealthResponse]:
    """Health check endpoint."""
    try:
        await ping(engine)
        database = "connected"
    except Exception as e:
        logger.warning(f"Health check could not reach the database: {e}")
        database = "disconnected"

    watchdog = getattr(request.app.state, "watchdog", None)
    return Envelope(
        message="Service is healthy" if database == "connected" else "Service is degraded",
        data=HealthResponse(
            status="ok" if database == "connected" else "degraded",
            version=settings.version,
            environment=settings.environment.value,
            uptime_seconds=round(time.monotonic() - _STARTED_AT, 3),
            database=database,
            watchdog=watchdog.status() if watchdog is not None else None,
        ),
    )


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "upload": "/upload/csv",
            "scheduled_messages": "/scheduled-messages",
            "policy_search": "/policies/search",
            "policy_stats": "/policies/stats",
            "docs": "/docs",
        },
    }


@app.post("/upload/csv", response_model=Envelope[IngestionSummaryDTO])
async def upload_csv(
    file: UploadFile | None = File(None, description="Policy data (.csv or .xlsx, max 10 MB)"),
) -> Envelope[IngestionSummaryDTO]:
    """Ingest a CSV/XLSX file in an isolated worker process.

    This endpoint:
    1. Validates extension and size
    2. Stages the file on disk
    3. Spawns one ingestion worker and waits for its single reply
    4. Deletes the staged file whatever the outcome
    """
    if file is None:
        raise UploadValidationError("No file uploaded")

    try:
        summary = await ingest_upload(file)
    finally:
        await file.close()

    logger.info(f"Ingestion completed for file: {file.filename}")
    return Envelope(
        message="File processed successfully",
        data=IngestionSummaryDTO.model_validate(summary),
    )


@app.post(
    "/scheduled-messages",
    response_model=Envelope[ScheduledMessageDTO],
    status_code=status.HTTP_201_CREATED,
)
async def create_message(
    payload: ScheduledMessageCreate,
    session: AsyncSession = Depends(get_session),
) -> Envelope[ScheduledMessageDTO]:
    """Queue a message for delivery at a future date and time."""
    if not payload.message or not payload.scheduled_date or not payload.scheduled_time:
        raise ScheduleValidationError("Message, scheduledDate, and scheduledTime are required")

    record = await create_scheduled_message(
        session,
        message=payload.message,
        scheduled_date=payload.scheduled_date,
        scheduled_time=payload.scheduled_time,
        recipient=payload.recipient,
        priority=payload.priority,
    )
    return Envelope(
        message="Scheduled message created successfully",
        data=ScheduledMessageDTO.model_validate(record),
    )


@app.get("/scheduled-messages", response_model=Envelope[ScheduledMessagePage])
async def list_messages(
    status_filter: Literal["pending", "processing", "sent", "failed"] | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
) -> Envelope[ScheduledMessagePage]:
    messages, total = await list_scheduled_messages(session, status=status_filter, page=page, limit=limit)
    return Envelope(
        data=ScheduledMessagePage(
            messages=[ScheduledMessageDTO.model_validate(m) for m in messages],
            pagination=Pagination(page=page, limit=limit, total=total, pages=-(-total // limit)),
        ),
    )


@app.get("/scheduled-messages/{message_id}", response_model=Envelope[ScheduledMessageDTO])
async def get_message(
    message_id: int,
    session: AsyncSession = Depends(get_session),
) -> Envelope[ScheduledMessageDTO]:
    record = await get_scheduled_message(session, message_id)
    return Envelope(data=ScheduledMessageDTO.model_validate(record))


@app.put("/scheduled-messages/{message_id}", response_model=Envelope[ScheduledMessageDTO])
async def update_message(
    message_id: int,
    payload: ScheduledMessageUpdate,
    session: AsyncSession = Depends(get_session),
) -> Envelope[ScheduledMessageDTO]:
    """Partially update a pending message; schedule changes are re-validated."""
    record = await update_scheduled_message(
        session,
        message_id,
        payload.model_dump(exclude_unset=True, by_alias=True),
    )
    return Envelope(
        message="Scheduled message updated successfully",
        data=ScheduledMessageDTO.model_validate(record),
    )


@app.delete("/scheduled-messages/{message_id}", response_model=Envelope[None])
async def delete_message(
    message_id: int,
    session: AsyncSession = Depends(get_session),
) -> Envelope[None]:
    await delete_scheduled_message(session, message_id)
    return Envelope(message="Scheduled message deleted successfully")


@app.get("/policies/search", response_model=Envelope[PolicyPage])
async def search_policies(
    email: str | None = Query(None, description="Customer email"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    """List a customer's policies with agent, carrier and category names."""
    if not email or not email.strip():
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            "Email parameter is required",
            ValueError("email is required"),
            error="validation_error",
        )

    customer_id = (
        await session.execute(
            select(models.Customer.id).where(models.Customer.email == email.strip().lower())
        )
    ).scalar_one_or_none()
    if customer_id is None:
        return error_response(
            status.HTTP_404_NOT_FOUND,
            "Customer not found",
            LookupError(email),
        )

    result = await session.execute(
        select(models.Policy)
        .where(models.Policy.customer_id == customer_id)
        .options(
            selectinload(models.Policy.agent),
            selectinload(models.Policy.carrier),
            selectinload(models.Policy.category),
            selectinload(models.Policy.customer),
        )
        .order_by(models.Policy.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    policies = result.scalars().all()
    total = (
        await session.execute(
            select(func.count()).select_from(models.Policy).where(models.Policy.customer_id == customer_id)
        )
    ).scalar_one()

    return Envelope(
        data=PolicyPage(
            policies=[
                PolicyDTO(
                    id=p.id,
                    policy_number=p.policy_number,
                    policy_type=p.policy_type,
                    policy_mode=p.policy_mode,
                    premium_amount=p.premium_amount,
                    premium_amount_written=p.premium_amount_written,
                    policy_start_date=p.policy_start_date,
                    policy_end_date=p.policy_end_date,
                    producer=p.producer,
                    csr=p.csr,
                    has_active_client_policy=p.has_active_client_policy,
                    agent_name=p.agent.name,
                    carrier_name=p.carrier.name,
                    category_name=p.category.category_name,
                    customer_email=p.customer.email,
                )
                for p in policies
            ],
            pagination=Pagination(page=page, limit=limit, total=total, pages=-(-total // limit)),
        ),
    )


@app.get("/policies/stats", response_model=Envelope[PolicyStats])
async def policy_stats(session: AsyncSession = Depends(get_session)) -> Envelope[PolicyStats]:
    """Row counts per entity kind plus premium totals."""

    async def count(model, *criteria) -> int:
        query = select(func.count()).select_from(model)
        if criteria:
            query = query.where(*criteria)
        return (await session.execute(query)).scalar_one()

    customers = await count(models.Customer)
    policies = await count(models.Policy)
    total_premium = (
        await session.execute(select(func.coalesce(func.sum(models.Policy.premium_amount), 0.0)))
    ).scalar_one()

    return Envelope(
        data=PolicyStats(
            agents=await count(models.Agent),
            customers=customers,
            accounts=await count(models.Account),
            categories=await count(models.PolicyCategory),
            carriers=await count(models.Carrier),
            policies=policies,
            active_policies=await count(models.Policy, models.Policy.is_active.is_(True)),
            average_policies_per_user=round(policies / customers, 2) if customers else 0.0,
            total_premium_amount=round(float(total_premium), 2),
        ),
    )
