"""
Real-time playback events (webhooks, server event streams).

Events go through the same lifecycle operations as the poller, so a session
observed by both paths is still created and stopped exactly once.
"""
import logging
from typing import Any, Callable, Dict, Optional

from ..core.database import SessionLocal, utcnow
from ..models.server import Server
from ..schemas.events import PushEvent
from . import session_queries
from .server_user_service import ServerUserService
from .session_lifecycle import (
    SessionCreationInput,
    SessionLifecycleManager,
    SessionStopInput,
    SessionUpdateInput,
    session_lifecycle as default_lifecycle,
)
from .session_mapper import serialize_session, serialize_violation
from .state_tracker import detect_media_change

logger = logging.getLogger(__name__)


class PushEventProcessor:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        lifecycle: SessionLifecycleManager = default_lifecycle,
        pubsub_service=None,
    ):
        self.session_factory = session_factory
        self.lifecycle = lifecycle
        self.pubsub_service = pubsub_service

    async def handle_event(self, server_id: int, event: PushEvent) -> Dict[str, Any]:
        """Apply one event; returns what happened to which session"""
        now = event.occurred_at or utcnow()

        db = self.session_factory()
        try:
            server = db.query(Server).filter(Server.id == server_id).first()
            if not server:
                raise ValueError(f"Server {server_id} not found")
            existing = session_queries.find_active_session(db, server_id, event.session_key)
            user = None
            if event.snapshot is not None:
                users = ServerUserService(db).resolve_for_snapshots(server_id, [event.snapshot])
                user = users.get(event.snapshot.external_user_id)
        finally:
            db.close()

        if event.event == "stopped":
            if existing is None:
                logger.debug(f"Stop event for unknown session key {event.session_key} on server {server_id}")
                return {"action": "ignored", "session_id": None}
            stop = await self.lifecycle.stop_session_atomic(SessionStopInput(
                session_id=existing.id,
                stopped_at=now,
                progress_ms=event.snapshot.progress_ms if event.snapshot else None,
            ))
            if stop.was_updated:
                await self._publish("session:stopped", serialize_session(stop.session))
            return {"action": "stopped" if stop.was_updated else "already_stopped", "session_id": stop.session.id}

        if event.snapshot is None or user is None:
            raise ValueError(f"{event.event} event for {event.session_key} carries no session snapshot")

        snapshot = event.snapshot
        if event.event in ("playing", "paused"):
            snapshot = snapshot.model_copy(update={"state": event.event})

        creation = SessionCreationInput(
            server_id=server_id,
            server_user_id=user.id,
            snapshot=snapshot,
            now=now,
        )

        if existing is None:
            result = await self.lifecycle.create_session_with_rules_atomic(creation)
        elif detect_media_change(existing.rating_key, snapshot.rating_key):
            result = await self.lifecycle.handle_media_change_atomic(creation)
        else:
            update = await self.lifecycle.update_session_atomic(SessionUpdateInput(
                server_id=server_id,
                session_id=existing.id,
                snapshot=snapshot,
                now=now,
            ))
            if update.updated:
                await self._publish("session:updated", serialize_session(update.session))
            return {"action": "updated" if update.updated else "ignored", "session_id": update.session.id}

        for stopped in result.stopped_sessions:
            await self._publish("session:stopped", serialize_session(stopped))
        event_name = "session:started" if result.created else "session:updated"
        await self._publish(event_name, serialize_session(result.session))
        for violation in result.violations:
            await self._publish("violation:new", serialize_violation(violation))
        return {"action": "created" if result.created else "updated", "session_id": result.session.id}

    async def _publish(self, event: str, data: Dict[str, Any]):
        if self.pubsub_service is None:
            return
        try:
            await self.pubsub_service.publish(event, data)
        except Exception as e:
            logger.error(f"Error publishing {event}: {e}")


# Global processor instance
push_event_processor: Optional[PushEventProcessor] = None


def get_push_event_processor() -> PushEventProcessor:
    global push_event_processor
    if push_event_processor is None:
        from ..core.pubsub import get_pubsub_service
        push_event_processor = PushEventProcessor(pubsub_service=get_pubsub_service())
    return push_event_processor
