"""Control endpoints for DEVSYNC API."""

from fastapi import APIRouter

from devsync.daemon import get_daemon

router = APIRouter()


@router.get("/status")
async def get_status() -> dict:
    """Get daemon status and run statistics."""
    try:
        daemon = get_daemon()
        return daemon.get_status()
    except RuntimeError:
        return {
            "error": "Daemon not running",
            "running": False,
        }


@router.post("/shutdown")
async def shutdown() -> dict:
    """Shutdown the daemon gracefully."""
    try:
        daemon = get_daemon()
        daemon.request_shutdown()
        return {
            "status": "shutting_down",
            "message": "Daemon shutdown initiated",
        }
    except RuntimeError:
        return {
            "error": "Daemon not running",
            "status": "failed",
        }
