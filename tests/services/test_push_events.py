"""
Tests for real-time push event handling
"""
import asyncio
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from conftest import NOW, make_snapshot
from streamwarden.models import Session
from streamwarden.schemas.events import PushEvent
from streamwarden.services.push_events import PushEventProcessor
from streamwarden.services.session_lifecycle import SessionCreationInput


@pytest.fixture
def pubsub():
    return AsyncMock()


@pytest.fixture
def processor(session_factory, lifecycle, pubsub):
    return PushEventProcessor(session_factory=session_factory, lifecycle=lifecycle, pubsub_service=pubsub)


def event(name, at=NOW, with_snapshot=True, **snapshot):
    return PushEvent(
        event=name,
        session_key="sk1",
        snapshot=make_snapshot(**snapshot) if with_snapshot else None,
        occurred_at=at,
    )


class TestPushEventProcessor:
    """Test cases for PushEventProcessor.handle_event"""

    @pytest.mark.asyncio
    async def test_play_progress_stop(self, processor, pubsub, db, server):
        started = await processor.handle_event(server.id, event("playing"))
        progressed = await processor.handle_event(server.id, event("progress", NOW + timedelta(minutes=10), progress_ms=600000))
        stopped = await processor.handle_event(server.id, event("stopped", NOW + timedelta(minutes=20), with_snapshot=False))

        assert started["action"] == "created"
        assert progressed == {"action": "updated", "session_id": started["session_id"]}
        assert stopped == {"action": "stopped", "session_id": started["session_id"]}

        session = db.get(Session, started["session_id"])
        assert session.stopped_at == NOW + timedelta(minutes=20)
        events = [call.args[0] for call in pubsub.publish.await_args_list]
        assert events == ["session:started", "session:updated", "session:stopped"]

    @pytest.mark.asyncio
    async def test_pause_accounting(self, processor, db, server):
        """Test the event name decides the state even when the payload says otherwise"""
        started = await processor.handle_event(server.id, event("playing"))
        await processor.handle_event(server.id, event("paused", NOW + timedelta(minutes=1), state="playing"))
        await processor.handle_event(server.id, event("playing", NOW + timedelta(minutes=4)))

        assert db.get(Session, started["session_id"]).paused_duration_ms == 180000

    @pytest.mark.asyncio
    async def test_stop_for_unknown_key_ignored(self, processor, server):
        result = await processor.handle_event(server.id, event("stopped", with_snapshot=False))

        assert result == {"action": "ignored", "session_id": None}

    @pytest.mark.asyncio
    async def test_unknown_server(self, processor, server):
        with pytest.raises(ValueError):
            await processor.handle_event(server.id + 100, event("playing"))

    @pytest.mark.asyncio
    async def test_play_without_snapshot_rejected(self, processor, server):
        with pytest.raises(ValueError):
            await processor.handle_event(server.id, event("playing", with_snapshot=False))

    @pytest.mark.asyncio
    async def test_push_and_poll_race_creates_one_session(self, processor, lifecycle, db, server, server_user):
        """Test the push path and the poll path observing one stream at once agree on a single row"""
        poll_create = lifecycle.create_session_with_rules_atomic(
            SessionCreationInput(server_id=server.id, server_user_id=server_user.id, snapshot=make_snapshot(), now=NOW)
        )

        push_result, poll_result = await asyncio.gather(
            processor.handle_event(server.id, event("playing")),
            poll_create,
        )

        assert push_result["session_id"] == poll_result.session.id
        assert db.query(Session).count() == 1

    @pytest.mark.asyncio
    async def test_offset_timestamps_normalized(self, processor, db, server):
        """Test webhook bodies with Z and +hh:mm timestamps are stored as naive UTC"""
        def webhook(name, occurred_at, with_snapshot=True):
            body = {"event": name, "session_key": "sk1", "occurred_at": occurred_at}
            if with_snapshot:
                body["snapshot"] = make_snapshot().model_dump(mode="json")
            return PushEvent.model_validate(body)

        started = await processor.handle_event(server.id, webhook("playing", "2024-06-01T20:00:00Z"))
        await processor.handle_event(server.id, webhook("paused", "2024-06-01T20:01:00Z"))
        await processor.handle_event(server.id, webhook("playing", "2024-06-01T22:04:00+02:00"))
        stopped = await processor.handle_event(server.id, webhook("stopped", "2024-06-01T20:20:00Z", with_snapshot=False))

        assert stopped["action"] == "stopped"
        session = db.get(Session, started["session_id"])
        assert session.started_at == NOW
        assert session.paused_duration_ms == 180000
        assert session.stopped_at == NOW + timedelta(minutes=20)

    def test_snapshot_pause_time_normalized(self):
        snapshot = make_snapshot().model_dump(mode="json")
        snapshot["last_paused_at"] = "2024-06-01T21:30:00+01:00"

        parsed = PushEvent.model_validate({"event": "paused", "session_key": "sk1", "snapshot": snapshot})

        assert parsed.snapshot.last_paused_at == NOW + timedelta(minutes=30)
        assert parsed.snapshot.last_paused_at.tzinfo is None
