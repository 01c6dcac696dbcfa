"""Entry point for scheduled and on-demand runs.

Adds one retry for errors that look transient and shapes the result into the
response payload.
"""

import asyncio
from typing import Any

from devsync.sync.orchestrator import CrossSyncOrchestrator, CrossSyncResult
from devsync.utils.logging import get_logger
from devsync.utils.retry import Sleep

logger = get_logger(__name__)

RETRYABLE_KEYWORDS = (
    "timeout",
    "timed out",
    "throttl",
    "429",
    "network",
    "econnreset",
    "connection reset",
    "etimedout",
)

DEFAULT_RUN_RETRY_DELAY = 300.0  # seconds


def is_retryable_error(error: BaseException) -> bool:
    """Guess from the message whether a failed run is worth retrying."""
    message = str(error).lower()
    return any(keyword in message for keyword in RETRYABLE_KEYWORDS)


async def run_cross_sync(
    orchestrator: CrossSyncOrchestrator,
    retry_delay: float = DEFAULT_RUN_RETRY_DELAY,
    sleep: Sleep = asyncio.sleep,
) -> CrossSyncResult:
    """Run the cross-sync, retrying once after ``retry_delay`` on transient errors."""
    try:
        return await orchestrator.execute_cross_sync()
    except Exception as e:
        if not is_retryable_error(e):
            logger.error(f"Cross-sync failed with non-retryable error: {e}")
            raise
        logger.warning(f"Cross-sync failed with retryable error, retrying in {retry_delay:.0f}s: {e}")

    await sleep(retry_delay)
    logger.info("Retrying cross-sync")
    return await orchestrator.execute_cross_sync()


def _percent(part: int, total: int) -> str:
    if not total:
        return "0.0%"
    return f"{part / total * 100:.1f}%"


def summarize_result(result: CrossSyncResult) -> dict[str, Any]:
    """Response payload for a run: statistics, timings, costs and errors."""
    total = result.total_processed
    return {
        "status": "partial" if result.errors else "success",
        "syncTimestamp": result.sync_timestamp,
        "statistics": {
            "totalProcessed": total,
            "matched": result.matched,
            "onlyIntune": result.only_intune,
            "onlyDefender": result.only_defender,
            "deletedCount": result.deleted_count,
            "percentages": {
                "matched": _percent(result.matched, total),
                "onlyIntune": _percent(result.only_intune, total),
                "onlyDefender": _percent(result.only_defender, total),
            },
        },
        "performance": {
            "totalMs": round(result.execution_time_ms, 1),
            "fetchIntuneMs": round(result.fetch_intune_ms, 1),
            "fetchDefenderMs": round(result.fetch_defender_ms, 1),
            "matchingMs": round(result.matching_ms, 1),
            "clearMs": round(result.clear_ms, 1),
            "upsertMs": round(result.upsert_ms, 1),
        },
        "cost": {
            "total": round(result.cost, 2),
            "fetchIntune": round(result.fetch_intune_cost, 2),
            "fetchDefender": round(result.fetch_defender_cost, 2),
            "clear": round(result.clear_cost, 2),
            "upsert": round(result.upsert_cost, 2),
        },
        "errorCount": len(result.errors),
        "errors": list(result.errors),
    }
