"""Cross-sync orchestrator.

One run goes through these phases:

    fetch (Intune and Defender, concurrently) -> match -> clear -> upsert

A failed fetch cancels the other one before the run stops. Each phase is timed and its cost captured. If a phase raises, the run stops
with ``CrossSyncError``; the metrics collected up to that point are logged.
Per-document write failures do not stop the run; they are reported in
``CrossSyncResult.errors``.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from devsync.errors import CrossSyncError
from devsync.models import DefenderDevice, ManagedDevice, SyncState
from devsync.sources.base import FetchResult, SourceReader
from devsync.sync.matcher import count_by_state, match_devices, sync_timestamp_now
from devsync.sync.writer import SyncStoreWriter
from devsync.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CrossSyncResult:
    """Statistics of a completed cross-sync run."""
    matched: int = 0
    only_intune: int = 0
    only_defender: int = 0
    total_processed: int = 0
    execution_time_ms: float = 0.0
    cost: float = 0.0

    fetch_intune_ms: float = 0.0
    fetch_defender_ms: float = 0.0
    matching_ms: float = 0.0
    clear_ms: float = 0.0
    upsert_ms: float = 0.0

    fetch_intune_cost: float = 0.0
    fetch_defender_cost: float = 0.0
    clear_cost: float = 0.0
    upsert_cost: float = 0.0

    deleted_count: int = 0
    sync_timestamp: str = ""
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """camelCase wire form."""
        return {
            "matched": self.matched,
            "onlyIntune": self.only_intune,
            "onlyDefender": self.only_defender,
            "totalProcessed": self.total_processed,
            "executionTimeMs": round(self.execution_time_ms, 1),
            "cost": round(self.cost, 2),
            "fetchIntuneMs": round(self.fetch_intune_ms, 1),
            "fetchDefenderMs": round(self.fetch_defender_ms, 1),
            "matchingMs": round(self.matching_ms, 1),
            "clearMs": round(self.clear_ms, 1),
            "upsertMs": round(self.upsert_ms, 1),
            "fetchIntuneCost": round(self.fetch_intune_cost, 2),
            "fetchDefenderCost": round(self.fetch_defender_cost, 2),
            "clearCost": round(self.clear_cost, 2),
            "upsertCost": round(self.upsert_cost, 2),
            "deletedCount": self.deleted_count,
            "syncTimestamp": self.sync_timestamp,
            "errors": list(self.errors),
        }


class CrossSyncOrchestrator:
    """Runs one full cross-sync: read both sources, match, replace the sync collection."""

    def __init__(
        self,
        intune_reader: SourceReader[ManagedDevice],
        defender_reader: SourceReader[DefenderDevice],
        writer: SyncStoreWriter,
    ) -> None:
        self.intune_reader = intune_reader
        self.defender_reader = defender_reader
        self.writer = writer

    @staticmethod
    async def _timed_fetch(reader: SourceReader[Any]) -> tuple[FetchResult[Any], float]:
        start = time.perf_counter()
        fetched = await reader.fetch_all()
        return fetched, (time.perf_counter() - start) * 1000

    async def _fetch_sources(self) -> dict[str, asyncio.Task]:
        """Run both fetches; the first failure cancels the other.

        Returns the finished tasks keyed by phase name. No fetch is still
        running when this returns or raises.
        """
        tasks = {
            "fetch_intune": asyncio.create_task(self._timed_fetch(self.intune_reader)),
            "fetch_defender": asyncio.create_task(self._timed_fetch(self.defender_reader)),
        }
        try:
            await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
        finally:
            pending = [task for task in tasks.values() if not task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        return tasks

    async def execute_cross_sync(self) -> CrossSyncResult:
        start = time.perf_counter()
        result = CrossSyncResult()
        phase = "fetch"

        logger.info("Starting cross-sync run")
        try:
            tasks = await self._fetch_sources()
            failures = [
                (name, task.exception()) for name, task in tasks.items()
                if not task.cancelled() and task.exception() is not None
            ]
            if failures:
                phase, error = failures[0]
                raise error
            intune, result.fetch_intune_ms = tasks["fetch_intune"].result()
            defender, result.fetch_defender_ms = tasks["fetch_defender"].result()
            result.fetch_intune_cost = intune.cost
            result.fetch_defender_cost = defender.cost
            logger.info(
                f"Fetched {len(intune.devices)} Intune devices ({result.fetch_intune_ms:.0f}ms) "
                f"and {len(defender.devices)} Defender devices ({result.fetch_defender_ms:.0f}ms)"
            )

            phase = "match"
            phase_start = time.perf_counter()
            result.sync_timestamp = sync_timestamp_now()
            records = match_devices(intune.devices, defender.devices, result.sync_timestamp)
            counts = count_by_state(records)
            result.matched = counts[SyncState.MATCHED]
            result.only_intune = counts[SyncState.ONLY_INTUNE]
            result.only_defender = counts[SyncState.ONLY_DEFENDER]
            result.total_processed = len(records)
            result.matching_ms = (time.perf_counter() - phase_start) * 1000

            phase = "clear"
            cleared = await self.writer.clear_all()
            result.clear_ms = cleared.duration_ms
            result.clear_cost = cleared.cost
            result.deleted_count = cleared.deleted_count

            phase = "upsert"
            written = await self.writer.bulk_upsert(records)
            result.upsert_ms = written.duration_ms
            result.upsert_cost = written.cost
            result.errors = [e.to_dict() for e in written.errors]
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000
            logger.error(
                f"Cross-sync failed during {phase} after {elapsed:.0f}ms: {e} "
                f"(partial metrics: {asdict(result)})"
            )
            raise CrossSyncError(phase, e) from e

        result.cost = (
            result.fetch_intune_cost + result.fetch_defender_cost
            + result.clear_cost + result.upsert_cost
        )
        result.execution_time_ms = (time.perf_counter() - start) * 1000

        logger.info(
            f"Cross-sync complete: {result.total_processed} records "
            f"({result.matched} matched, {result.only_intune} only Intune, "
            f"{result.only_defender} only Defender), {len(result.errors)} errors, "
            f"{result.cost:.2f} RU, {result.execution_time_ms:.0f}ms"
        )
        return result
