"""Copy a source inventory into its document store collection."""

import time
from dataclasses import dataclass, field
from typing import Any

from devsync.sources.base import SourceReader
from devsync.sync.writer import BulkResult, SyncStoreWriter
from devsync.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class IngestResult:
    """Outcome of one ingest run."""
    source: str
    fetched: int = 0
    deleted: int = 0
    written: int = 0
    failed: int = 0
    fetch_cost: float = 0.0
    write_cost: float = 0.0
    execution_time_ms: float = 0.0
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "fetched": self.fetched,
            "deleted": self.deleted,
            "written": self.written,
            "failed": self.failed,
            "fetchCost": round(self.fetch_cost, 2),
            "writeCost": round(self.write_cost, 2),
            "executionTimeMs": round(self.execution_time_ms, 1),
            "errors": self.errors,
        }


class SourceIngestor:
    """Replaces a source collection with a fresh copy of the source.

    The writer should be keyed by ``id`` so per-document errors name the
    source device.
    """

    def __init__(self, reader: SourceReader[Any], writer: SyncStoreWriter) -> None:
        self.reader = reader
        self.writer = writer

    async def ingest(self) -> IngestResult:
        start = time.perf_counter()
        result = IngestResult(source=self.reader.name)

        fetched = await self.reader.fetch_all()
        result.fetched = len(fetched.devices)
        result.fetch_cost = fetched.cost

        cleared = await self.writer.clear_all()
        result.deleted = cleared.deleted_count
        result.write_cost += cleared.cost

        written = BulkResult()
        if fetched.devices:
            written = await self.writer.bulk_upsert(d.to_dict() for d in fetched.devices)
        result.written = written.success_count
        result.failed = written.failure_count
        result.write_cost += written.cost
        result.errors = [e.to_dict() for e in written.errors]

        result.execution_time_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Ingested {result.written}/{result.fetched} {result.source} devices into "
            f"{self.writer.collection} ({result.failed} failed, {result.execution_time_ms:.0f}ms)"
        )
        return result
