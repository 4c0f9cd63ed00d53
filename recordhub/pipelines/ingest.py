"""Ingestion gateway: upload validation, staging and worker dispatch.

One upload maps to one spawned worker process. The gateway only ever talks to
it through a pipe (single request, single terminal reply), enforces a wall
clock deadline, terminates the worker if it is still alive when the exchange
ends and always removes the staged file.
"""

from __future__ import annotations

import logging
import multiprocessing as mp
import time
import uuid
from multiprocessing.connection import Connection
from pathlib import Path
from typing import Any, Callable

from fastapi import UploadFile
from starlette.concurrency import run_in_threadpool

from recordhub.config import settings
from recordhub.workers.ingestion import ingestion_worker_main

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 1024 * 1024


class UploadValidationError(Exception):
    """Upload rejected before any processing (maps to HTTP 400)."""
    pass


class IngestionError(Exception):
    """Run-fatal ingestion failure (maps to HTTP 500)."""
    pass


class WorkerFailedError(IngestionError):
    """Worker replied with a failure message."""
    pass


class WorkerCrashedError(IngestionError):
    """Worker exited without a usable reply."""
    pass


class WorkerTimeoutError(IngestionError):
    """Worker did not reply before the deadline."""
    pass


def validate_upload(filename: str | None, allowed_extensions: list[str] | None = None) -> str:
    """Check the upload's name and extension; returns the lowercased extension."""
    if not filename:
        raise UploadValidationError("No file uploaded")

    allowed = [ext.lower() for ext in (allowed_extensions or settings.upload.allowed_extensions)]
    extension = Path(filename).suffix.lower()
    if extension not in allowed:
        raise UploadValidationError(
            f"Unsupported file type. Allowed: {', '.join(allowed)}"
        )
    return extension


async def save_upload(file: UploadFile, directory: str | Path, max_bytes: int) -> Path:
    """Stream an upload to a uniquely named file under ``directory``.

    Raises:
        UploadValidationError: If the upload is larger than ``max_bytes``
    """
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"{uuid.uuid4()}-{Path(file.filename or 'upload').name}"

    size = 0
    too_large = False
    with target.open("wb") as out:
        while chunk := await file.read(_READ_CHUNK_BYTES):
            size += len(chunk)
            if size > max_bytes:
                too_large = True
                break
            out.write(chunk)

    if too_large:
        remove_file(target)
        raise UploadValidationError(
            f"File too large. Maximum size is {max_bytes // (1024 * 1024)} MB"
        )

    logger.debug(f"Staged upload {file.filename} at {target} ({size} bytes)")
    return target


def remove_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.error(f"Could not remove staged file {path}: {e}")


def _await_reply(conn: Connection, process: Any, deadline: float, timeout: float, poll_interval: float) -> dict:
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.error(f"Ingestion worker {process.pid} timeout")
            raise WorkerTimeoutError(f"Ingestion worker timed out after {timeout:g}s")

        if conn.poll(min(poll_interval, remaining)):
            try:
                return conn.recv()
            except EOFError:
                raise WorkerCrashedError(
                    f"Worker stopped with exit code {process.exitcode} before replying"
                ) from None

        if not process.is_alive():
            if conn.poll(0):
                continue
            raise WorkerCrashedError(f"Worker stopped with exit code {process.exitcode}")


def dispatch_to_worker(
    file_path: str | Path,
    *,
    timeout: float,
    context: Any = None,
    poll_interval: float = 0.5,
) -> dict[str, Any]:
    """Run one ingestion in a spawned worker and return its summary.

    Blocking; call it from a thread when inside the event loop.

    Raises:
        WorkerFailedError, WorkerCrashedError, WorkerTimeoutError
    """
    ctx = context or mp.get_context("spawn")
    parent_conn, child_conn = ctx.Pipe()
    process = ctx.Process(
        target=ingestion_worker_main,
        args=(child_conn,),
        name="ingestion-worker",
        daemon=True,
    )
    process.start()
    child_conn.close()
    logger.info(f"Spawned ingestion worker {process.pid} for {Path(file_path).name}")

    deadline = time.monotonic() + timeout
    try:
        try:
            parent_conn.send({"filePath": str(file_path)})
        except OSError as e:
            raise WorkerCrashedError(f"Could not reach ingestion worker: {e}") from e
        message = _await_reply(parent_conn, process, deadline, timeout, poll_interval)
    finally:
        parent_conn.close()
        if process.is_alive():
            logger.warning(f"Terminating ingestion worker {process.pid}")
            process.terminate()
        process.join(timeout=5)

    if message.get("success"):
        logger.info(f"Ingestion completed by worker {process.pid}")
        return message["result"]

    error = message.get("error") or "Unknown error"
    logger.error(f"Ingestion failed in worker {process.pid}: {error}")
    raise WorkerFailedError(error)


async def ingest_upload(
    file: UploadFile,
    *,
    dispatch: Callable[..., dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Validate, stage and ingest one upload; the staged file never outlives the call."""
    validate_upload(file.filename)
    staged = await save_upload(file, settings.upload.directory, settings.upload.max_bytes)

    logger.info(f"Starting ingestion for file: {file.filename}")
    try:
        return await run_in_threadpool(
            dispatch or dispatch_to_worker,
            staged,
            timeout=settings.upload.worker_timeout_seconds,
        )
    finally:
        remove_file(staged)
