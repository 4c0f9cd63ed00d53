"""Chunked, sequential batch runner for one ingestion run."""
from __future__ import annotations

import logging
from typing import Iterable, Mapping

from recordhub.pipelines.normalization import PolicyRow, missing_columns
from recordhub.pipelines.resolution import EntityStore, IngestionSummary, ResolutionEngine, RunContext

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


class BatchRunError(Exception):
    """Raised when a whole chunk cannot be persisted."""
    pass


def chunked(items: list, size: int) -> Iterable[list]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class BatchRunner:
    """Drives the resolution engine over parsed records.

    Rows are processed strictly in order, one at a time, so the run context's
    lookup maps never see concurrent read-then-write. Row failures end up in
    the summary; only a failed chunk commit is raised.
    """

    def __init__(self, store: EntityStore, *, batch_size: int = DEFAULT_BATCH_SIZE):
        self.store = store
        self.engine = ResolutionEngine(store)
        self.batch_size = batch_size

    async def run(self, records: list[Mapping[str, str]]) -> IngestionSummary:
        ctx = RunContext()

        if records:
            absent = missing_columns(list(records[0].keys()))
            if absent:
                logger.warning(f"Upload is missing columns (read as blank): {', '.join(absent)}")

        total_batches = (len(records) + self.batch_size - 1) // self.batch_size
        for batch_index, batch in enumerate(chunked(records, self.batch_size)):
            first_row = batch_index * self.batch_size
            for offset, record in enumerate(batch):
                # +2: header line plus 1-based numbering
                row = PolicyRow.from_record(record, row_number=first_row + offset + 2)
                await self.engine.process_row(row, ctx)

            try:
                await self.store.commit()
            except Exception as e:
                logger.error(f"Failed to commit batch {batch_index + 1}/{total_batches}: {e}", exc_info=True)
                raise BatchRunError(f"Failed to persist batch {batch_index + 1}: {e}") from e

            logger.info(f"Processed batch {batch_index + 1}/{total_batches}")

        logger.info(f"Ingestion run finished: {ctx.summary.as_log_fields()}")
        return ctx.summary
