"""
Poller control endpoints
"""
from fastapi import APIRouter
import logging

from ...schemas.session import PollerStatusResponse
from ...services.session_poller import session_poller

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/status", response_model=PollerStatusResponse)
async def get_poller_status():
    """Current poller state"""
    return session_poller.get_status()


@router.post("/trigger")
async def trigger_poll():
    """Run a poll cycle now"""
    results = await session_poller.trigger_poll()
    return {
        "servers": len(results),
        "failed": [r.server_id for r in results if not r.success],
        "started": sum(len(r.started) for r in results),
        "stopped": sum(len(r.stopped) for r in results),
    }


@router.post("/reconcile")
async def trigger_reconciliation():
    """Run a reconciliation poll now, re-checking every active session"""
    results = await session_poller.trigger_reconciliation_poll()
    return {
        "servers": len(results),
        "failed": [r.server_id for r in results if not r.success],
        "started": sum(len(r.started) for r in results),
        "stopped": sum(len(r.stopped) for r in results),
    }


@router.post("/sweep")
async def sweep_stale_sessions():
    """Force-stop sessions that have not been seen within the stale timeout"""
    stopped = await session_poller.sweep_stale_sessions()
    logger.info(f"Manual sweep stopped {stopped} sessions")
    return {"stopped": stopped}
