"""Isolated ingestion worker.

Runs in a freshly spawned process. It owns its own database engine, receives
exactly one request over the pipe and answers with exactly one terminal
message:

    request:  {"filePath": str}
    response: {"success": True, "result": summary} | {"success": False, "error": str}
"""
from __future__ import annotations

import asyncio
import logging
import os
from multiprocessing.connection import Connection
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncEngine
from tenacity import AsyncRetrying, before_sleep_log, stop_after_attempt, wait_exponential

from recordhub.config import settings
from recordhub.db import create_worker_engine, ping, session_factory_for
from recordhub.logging_config import setup_logging
from recordhub.parsers import parse_file
from recordhub.pipelines.batch import BatchRunner
from recordhub.pipelines.resolution import IngestionSummary
from recordhub.pipelines.store import SqlEntityStore

logger = logging.getLogger(__name__)


async def wait_for_database(engine: AsyncEngine) -> None:
    """Block until the worker's own engine can reach the database."""
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(settings.db.connect_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    ):
        with attempt:
            await ping(engine)


async def process_file(file_path: str | Path, *, batch_size: int | None = None) -> IngestionSummary:
    """Parse ``file_path`` and run every row through the batch runner."""
    records = parse_file(file_path)
    logger.info(f"Parsed {len(records)} rows from {Path(file_path).name}")

    engine = create_worker_engine()
    try:
        await wait_for_database(engine)
        logger.info("Database connected in ingestion worker")

        async with session_factory_for(engine)() as session:
            runner = BatchRunner(
                SqlEntityStore(session),
                batch_size=batch_size or settings.upload.batch_size,
            )
            return await runner.run(records)
    finally:
        await engine.dispose()


def ingestion_worker_main(conn: Connection) -> None:
    """Process entry point; must stay importable at module level for spawn."""
    setup_logging()
    pid = os.getpid()

    try:
        request = conn.recv()
        file_path = request["filePath"]
        logger.info(f"Ingestion worker {pid} received file: {file_path}")

        summary = asyncio.run(process_file(file_path))
        conn.send({"success": True, "result": summary.to_dict()})
        logger.info(f"Ingestion worker {pid} finished")
    except Exception as e:
        logger.error(f"Ingestion worker {pid} error: {e}", exc_info=True)
        conn.send({"success": False, "error": str(e) or e.__class__.__name__})
    finally:
        conn.close()
