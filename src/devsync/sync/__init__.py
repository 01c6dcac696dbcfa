"""Device cross-sync engine."""

from devsync.sync.matcher import count_by_state, match_devices
from devsync.sync.orchestrator import CrossSyncOrchestrator, CrossSyncResult
from devsync.sync.query import SyncPage, SyncQueryService
from devsync.sync.runner import is_retryable_error, run_cross_sync, summarize_result
from devsync.sync.writer import BulkResult, ClearResult, SyncStoreWriter, WriteError

__all__ = [
    "BulkResult",
    "ClearResult",
    "CrossSyncOrchestrator",
    "CrossSyncResult",
    "SyncPage",
    "SyncQueryService",
    "SyncStoreWriter",
    "WriteError",
    "count_by_state",
    "is_retryable_error",
    "match_devices",
    "run_cross_sync",
    "summarize_result",
]
