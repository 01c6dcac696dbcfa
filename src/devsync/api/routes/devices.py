"""Device sync endpoints for DEVSYNC API."""

from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Query

from devsync.daemon import get_daemon
from devsync.errors import DevSyncError, SyncInProgressError, ValidationError
from devsync.sync.runner import summarize_result
from devsync.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def _daemon_or_503():
    try:
        return get_daemon()
    except RuntimeError:
        raise HTTPException(status_code=503, detail="Daemon not running") from None


@router.get("/devices/sync-all")
async def get_synced_devices(
    sync_state: str | None = Query(None, alias="syncState", description="matched, only_intune or only_defender"),
    page_size: int = Query(50, alias="pageSize", description="Records per page (1-100)"),
    continuation_token: str | None = Query(None, alias="continuationToken"),
) -> dict:
    """Page through the cross-synced device records."""
    daemon = _daemon_or_503()
    try:
        page = await daemon.query_service().get_synced_devices(
            sync_state=sync_state,
            page_size=page_size,
            continuation_token=continuation_token,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except DevSyncError as e:
        logger.error(f"Failed to query synced devices: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e

    return {
        "success": True,
        "data": page.to_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/devices/sync-cross")
async def sync_cross() -> dict:
    """Run a cross-sync now and return its summary."""
    daemon = _daemon_or_503()
    try:
        result = await daemon.trigger_sync()
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except DevSyncError as e:
        logger.error(f"On-demand cross-sync failed: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e

    summary = summarize_result(result)
    return {
        "success": True,
        "message": (
            "Device cross-sync completed successfully"
            if summary["status"] == "success"
            else "Device cross-sync completed with errors"
        ),
        "data": summary,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
