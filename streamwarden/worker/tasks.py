"""
Celery tasks for deployments that run session maintenance outside the API process.

Each task builds its own poller so no asyncio state crosses event loops.
"""
import asyncio
import logging

from .celery_app import celery_app
from ..core.config import settings
from ..core.pubsub import PubSubService
from ..services.session_lifecycle import SessionLifecycleManager
from ..services.session_poller import SessionPoller

logger = logging.getLogger(__name__)


def build_poller() -> SessionPoller:
    poller = SessionPoller(lifecycle=SessionLifecycleManager())
    poller.initialize(pubsub_service=PubSubService(settings.redis_url))
    return poller


async def _run_sweep(poller: SessionPoller) -> int:
    try:
        return await poller.sweep_stale_sessions()
    finally:
        await poller.pubsub_service.close()


async def _run_reconciliation(poller: SessionPoller):
    try:
        return await poller.trigger_reconciliation_poll()
    finally:
        await poller.pubsub_service.close()


@celery_app.task
def sweep_stale_sessions():
    """Force-stop sessions that have not been observed within the stale timeout"""
    logger.info("Starting stale session sweep task")
    stopped = asyncio.run(_run_sweep(build_poller()))
    logger.info(f"Stale session sweep stopped {stopped} sessions")
    return {"status": "completed", "sessions_stopped": stopped}


@celery_app.task(bind=True)
def reconcile_sessions(self):
    """Poll every enabled server and re-check all active sessions"""
    logger.info("Starting session reconciliation task")
    try:
        results = asyncio.run(_run_reconciliation(build_poller()))
    except Exception as e:
        logger.error(f"Error in reconcile_sessions task: {str(e)}")
        raise self.retry(exc=e, countdown=60, max_retries=3)

    failed = [r.server_id for r in results if not r.success]
    logger.info(f"Reconciled {len(results)} servers ({len(failed)} failed)")
    return {
        "status": "completed",
        "servers_polled": len(results),
        "servers_failed": failed,
        "sessions_started": sum(len(r.started) for r in results),
        "sessions_stopped": sum(len(r.stopped) for r in results),
    }
