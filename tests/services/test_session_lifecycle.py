"""
Tests for atomic session create, update and stop
"""
import asyncio
import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from conftest import NOW, make_snapshot
from streamwarden.core.exceptions import SessionNotFoundError
from streamwarden.models import Session, ServerUser, Violation
from streamwarden.services import session_queries
from streamwarden.services.rule_engine import RuleEngine
from streamwarden.services.session_lifecycle import (
    SessionCreationInput,
    SessionStopInput,
    SessionUpdateInput,
)


async def create(lifecycle, server, server_user, now=NOW, **snapshot):
    return await lifecycle.create_session_with_rules_atomic(
        SessionCreationInput(
            server_id=server.id,
            server_user_id=server_user.id,
            snapshot=make_snapshot(**snapshot),
            now=now,
        )
    )


async def stop(lifecycle, session_id, stopped_at, **kwargs):
    return await lifecycle.stop_session_atomic(SessionStopInput(session_id=session_id, stopped_at=stopped_at, **kwargs))


async def update(lifecycle, server, session_id, now, **snapshot):
    return await lifecycle.update_session_atomic(
        SessionUpdateInput(server_id=server.id, session_id=session_id, snapshot=make_snapshot(**snapshot), now=now)
    )


class TestCreateSession:
    """Test cases for create_session_with_rules_atomic"""

    @pytest.mark.asyncio
    async def test_creates_active_session(self, lifecycle, db, server, server_user):
        result = await create(lifecycle, server, server_user)

        assert result.created is True
        assert result.session.id is not None
        assert result.session.state == "playing"
        assert result.session.stopped_at is None
        assert result.reference_id is None
        assert result.session.quality == "Direct (8.0 Mbps)"

    @pytest.mark.asyncio
    async def test_concurrent_creates_produce_one_row(self, lifecycle, db, server, server_user):
        """Test simultaneous triggers for one key never create duplicates"""
        results = await asyncio.gather(*[create(lifecycle, server, server_user) for _ in range(5)])

        assert sum(1 for r in results if r.created) == 1
        assert len({r.session.id for r in results}) == 1
        assert db.query(Session).count() == 1

    @pytest.mark.asyncio
    async def test_insert_conflict_returns_existing_row(self, lifecycle, db, server, server_user, monkeypatch):
        """Test losing the insert race to another process resolves to the winner's row"""
        first = await create(lifecycle, server, server_user)

        real_find = session_queries.find_active_session
        calls = []

        def find_missing_once(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                return None
            return real_find(*args, **kwargs)

        monkeypatch.setattr(session_queries, "find_active_session", find_missing_once)

        result = await create(lifecycle, server, server_user, now=NOW + timedelta(seconds=15))

        assert result.created is False
        assert result.session.id == first.session.id
        assert db.query(Session).count() == 1

    @pytest.mark.asyncio
    async def test_paused_on_first_sight(self, lifecycle, server, server_user):
        result = await create(lifecycle, server, server_user, state="paused")

        assert result.session.state == "paused"
        assert result.session.last_paused_at == NOW

    @pytest.mark.asyncio
    async def test_in_place_quality_change(self, lifecycle, db, server, server_user):
        """Test the same key with a new bitrate updates the row instead of creating one"""
        first = await create(lifecycle, server, server_user)

        result = await create(lifecycle, server, server_user, now=NOW + timedelta(seconds=15), bitrate=4000)

        assert result.created is False
        assert result.session.id == first.session.id
        assert result.quality_change is not None
        assert result.quality_change.restarted is False
        assert result.quality_change.new_quality == "Direct (4.0 Mbps)"
        assert db.get(Session, first.session.id).bitrate == 4000

    @pytest.mark.asyncio
    async def test_quality_change_restart(self, lifecycle, db, server, server_user):
        """Test a new key for media the user is already playing continues the same play"""
        first = await create(lifecycle, server, server_user, progress_ms=300000)

        result = await create(
            lifecycle, server, server_user, now=NOW + timedelta(minutes=5),
            session_key="sk2", progress_ms=300000, is_transcode=True, video_decision="transcode", bitrate=4000,
        )

        assert result.created is True
        assert result.quality_change.restarted is True
        assert result.reference_id == first.session.id
        assert [s.id for s in result.stopped_sessions] == [first.session.id]
        assert db.get(Session, first.session.id).stopped_at == NOW + timedelta(minutes=5)
        assert session_queries.count_unique_plays(db) == 1

    @pytest.mark.asyncio
    async def test_media_change_stops_old_session(self, lifecycle, db, server, server_user):
        """Test a reused key with different media closes the old row and opens a new one"""
        first = await create(lifecycle, server, server_user)

        result = await lifecycle.handle_media_change_atomic(
            SessionCreationInput(
                server_id=server.id,
                server_user_id=server_user.id,
                snapshot=make_snapshot(rating_key="rk-200", media_title="Ronin"),
                now=NOW + timedelta(minutes=30),
            )
        )

        assert result.created is True
        assert result.session.rating_key == "rk-200"
        assert [s.id for s in result.stopped_sessions] == [first.session.id]

        old = db.get(Session, first.session.id)
        assert old.stopped_at == NOW + timedelta(minutes=30)
        assert old.duration_ms == 1800000
        assert len(session_queries.find_active_sessions_for_server(db, server.id)) == 1


class TestGrouping:
    """Test cases for resume grouping and unique play counts"""

    async def _first_play(self, lifecycle, server, server_user):
        first = await create(lifecycle, server, server_user)
        await stop(lifecycle, first.session.id, NOW + timedelta(minutes=10), progress_ms=600000)
        return first

    @pytest.mark.asyncio
    async def test_resume_within_window_is_one_play(self, lifecycle, db, server, server_user):
        first = await self._first_play(lifecycle, server, server_user)

        resumed = await create(
            lifecycle, server, server_user, now=NOW + timedelta(minutes=10, seconds=30),
            session_key="sk2", progress_ms=600000,
        )

        assert resumed.reference_id == first.session.id
        assert session_queries.count_unique_plays(db) == 1

    @pytest.mark.asyncio
    async def test_resume_outside_window_is_two_plays(self, lifecycle, db, server, server_user):
        await self._first_play(lifecycle, server, server_user)

        resumed = await create(
            lifecycle, server, server_user, now=NOW + timedelta(minutes=12),
            session_key="sk2", progress_ms=600000,
        )

        assert resumed.reference_id is None
        assert session_queries.count_unique_plays(db) == 2

    @pytest.mark.asyncio
    async def test_restart_from_beginning_is_new_play(self, lifecycle, db, server, server_user):
        await self._first_play(lifecycle, server, server_user)

        restarted = await create(
            lifecycle, server, server_user, now=NOW + timedelta(minutes=10, seconds=30),
            session_key="sk2", progress_ms=0,
        )

        assert restarted.reference_id is None


class TestUpdateSession:
    """Test cases for update_session_atomic"""

    @pytest.mark.asyncio
    async def test_pause_and_resume_accounting(self, lifecycle, server, server_user):
        created = await create(lifecycle, server, server_user)
        session_id = created.session.id

        paused = await update(lifecycle, server, session_id, NOW + timedelta(minutes=1), state="paused", progress_ms=60000)
        resumed = await update(lifecycle, server, session_id, NOW + timedelta(minutes=3), state="playing", progress_ms=60000)

        assert paused.state_changed is True
        assert paused.session.last_paused_at == NOW + timedelta(minutes=1)
        assert resumed.updated is True
        assert resumed.session.paused_duration_ms == 120000
        assert resumed.session.last_paused_at is None
        assert resumed.session.last_seen_at == NOW + timedelta(minutes=3)

    @pytest.mark.asyncio
    async def test_marks_watched_past_threshold(self, lifecycle, server, server_user):
        created = await create(lifecycle, server, server_user)

        result = await update(lifecycle, server, created.session.id, NOW + timedelta(minutes=95), progress_ms=5100000)

        assert result.session.watched is True

    @pytest.mark.asyncio
    async def test_update_after_stop_is_ignored(self, lifecycle, server, server_user):
        """Test a late observation never revives a stopped session"""
        created = await create(lifecycle, server, server_user)
        await stop(lifecycle, created.session.id, NOW + timedelta(minutes=5))

        result = await update(lifecycle, server, created.session.id, NOW + timedelta(minutes=6), progress_ms=360000)

        assert result.updated is False
        assert result.session.stopped_at == NOW + timedelta(minutes=5)


class TestStopSession:
    """Test cases for stop_session_atomic"""

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, lifecycle, server, server_user):
        created = await create(lifecycle, server, server_user)

        first = await stop(lifecycle, created.session.id, NOW + timedelta(minutes=10), progress_ms=600000)
        second = await stop(lifecycle, created.session.id, NOW + timedelta(minutes=20), progress_ms=1200000)

        assert first.was_updated is True
        assert first.duration_ms == 600000
        assert second.was_updated is False
        assert second.duration_ms == 600000
        assert second.session.stopped_at == NOW + timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_concurrent_stops_apply_once(self, lifecycle, server, server_user):
        created = await create(lifecycle, server, server_user)

        results = await asyncio.gather(*[
            stop(lifecycle, created.session.id, NOW + timedelta(minutes=10)) for _ in range(3)
        ])

        assert sum(1 for r in results if r.was_updated) == 1

    @pytest.mark.asyncio
    async def test_row_deleted_while_waiting_for_lock(self, lifecycle, db, server, server_user):
        """Test a session removed while its stop waits on the key lock raises SessionNotFoundError"""
        created = await create(lifecycle, server, server_user)

        async with lifecycle._locks.acquire((server.id, "sk1")):
            pending = asyncio.create_task(stop(lifecycle, created.session.id, NOW + timedelta(minutes=10)))
            for _ in range(3):
                await asyncio.sleep(0)
            db.delete(db.get(Session, created.session.id))
            db.commit()

        with pytest.raises(SessionNotFoundError):
            await pending

    @pytest.mark.asyncio
    async def test_short_session_not_counted(self, lifecycle, db, server, server_user):
        """Test plays under the minimum play time are flagged and left out of play counts"""
        created = await create(lifecycle, server, server_user)

        result = await stop(lifecycle, created.session.id, NOW + timedelta(seconds=60))

        assert result.short_session is True
        assert session_queries.count_unique_plays(db) == 0

    @pytest.mark.asyncio
    async def test_watched_on_stop(self, lifecycle, server, server_user):
        created = await create(lifecycle, server, server_user)

        result = await stop(lifecycle, created.session.id, NOW + timedelta(minutes=100), progress_ms=5400000)

        assert result.watched is True
        assert result.duration_ms == 5460000

    @pytest.mark.asyncio
    async def test_seen_before_guard(self, lifecycle, server, server_user):
        """Test a stale stop is skipped when the session was observed after the cutoff"""
        created = await create(lifecycle, server, server_user)

        result = await stop(lifecycle, created.session.id, NOW, force_stopped=True, seen_before=NOW - timedelta(minutes=5))

        assert result.was_updated is False
        assert result.session.stopped_at is None


class TestRuleEvaluationOnCreate:
    """Test cases for violations recorded while creating sessions"""

    @pytest.mark.asyncio
    async def test_violation_and_trust_penalty(self, lifecycle, db, server, server_user, make_rule):
        make_rule("concurrent_streams", {"maxStreams": 1})
        await create(lifecycle, server, server_user)

        result = await create(lifecycle, server, server_user, session_key="sk2", rating_key="rk-200")

        assert len(result.violations) == 1
        assert result.violations[0].rule_type == "concurrent_streams"
        assert result.violations[0].trust_penalty == 5
        db.refresh(server_user)
        assert server_user.trust_score == 95

    @pytest.mark.asyncio
    async def test_overlapping_violation_deduplicated(self, lifecycle, db, server, server_user, make_rule):
        """Test a third stream does not re-flag sessions already in an open violation"""
        make_rule("concurrent_streams", {"max_streams": 1})
        await create(lifecycle, server, server_user)
        await create(lifecycle, server, server_user, session_key="sk2", rating_key="rk-200")

        third = await create(lifecycle, server, server_user, session_key="sk3", rating_key="rk-300")

        assert third.violations == []
        assert db.query(Violation).count() == 1

    @pytest.mark.asyncio
    async def test_trust_score_clamped_at_floor(self, lifecycle, db, server, server_user, make_rule):
        server_user.trust_score = 3
        db.commit()
        make_rule("device_velocity", {"max_ips": 1, "window_hours": 24})
        await create(lifecycle, server, server_user)

        await create(lifecycle, server, server_user, session_key="sk2", rating_key="rk-200", ip_address="10.0.0.6")

        assert db.query(ServerUser.trust_score).filter(ServerUser.id == server_user.id).scalar() == 0

    @pytest.mark.asyncio
    async def test_rule_for_other_user_ignored(self, lifecycle, db, server, server_user, make_rule):
        make_rule("concurrent_streams", {"max_streams": 1}, server_user_id=server_user.id + 1)
        await create(lifecycle, server, server_user)

        result = await create(lifecycle, server, server_user, session_key="sk2", rating_key="rk-200")

        assert result.violations == []

    @pytest.mark.asyncio
    async def test_failing_rule_is_isolated(self, lifecycle, db, server, server_user, make_rule):
        """Test one broken evaluator does not stop the others or the session"""
        broken = make_rule("geo_restriction", {"blocked_countries": ["KP"]})
        make_rule("concurrent_streams", {"max_streams": 1})
        await create(lifecycle, server, server_user)

        real_engine = RuleEngine()

        def evaluate(rule, session, history):
            if rule.id == broken.id:
                raise RuntimeError("evaluator exploded")
            return real_engine.evaluate_rule(rule, session, history)

        lifecycle.rule_engine = MagicMock()
        lifecycle.rule_engine.evaluate_rule.side_effect = evaluate

        result = await create(lifecycle, server, server_user, session_key="sk2", rating_key="rk-200")

        assert result.created is True
        assert [v.rule_type for v in result.violations] == ["concurrent_streams"]
        assert lifecycle.rule_engine.evaluate_rule.call_count == 2

    @pytest.mark.asyncio
    async def test_malformed_rule_skipped(self, lifecycle, db, server, server_user, make_rule):
        make_rule("concurrent_streams", {"max_streams": "lots"})

        assert session_queries.get_active_rules(db) == []
        result = await create(lifecycle, server, server_user)
        assert result.created is True
