"""
Inbound real-time playback events from media servers
"""
from fastapi import APIRouter, HTTPException, status
import logging

from ...core.exceptions import SessionNotFoundError, SessionPersistenceError
from ...schemas.events import PushEvent
from ...services.push_events import get_push_event_processor

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/events/{server_id}")
async def receive_event(server_id: int, event: PushEvent):
    """Apply a playing/paused/progress/stopped event for one server"""
    processor = get_push_event_processor()
    try:
        return await processor.handle_event(server_id, event)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SessionPersistenceError as e:
        logger.error(f"Failed to persist event for server {server_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Session store unavailable")
