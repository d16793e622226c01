"""
Atomic session lifecycle operations.

Every write to a session row goes through SessionLifecycleManager. Work for
one (server_id, session_key) is serialized by an in-process keyed lock; the
partial unique index on active keys and conditional UPDATEs on
`stopped_at IS NULL` keep the same guarantees across processes.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Any, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from ..core.config import Settings, settings as default_settings
from ..core.database import SessionLocal
from ..core.exceptions import SessionNotFoundError, SessionPersistenceError
from ..core.locks import KeyedLock
from ..models.session import Session
from ..models.violation import Violation
from ..schemas.rule import RuleDefinition
from ..schemas.snapshot import SessionSnapshot
from . import session_queries
from .rule_engine import RuleEngine, does_rule_apply_to_user, rule_engine as default_rule_engine
from .session_mapper import format_quality_string, new_session_values, quality_values
from .state_tracker import (
    calculate_pause_accumulation,
    calculate_stop_duration,
    chain_head_id,
    check_watch_completion,
    detect_media_change,
    detect_quality_change,
    is_completion_eligible,
    should_group_with_previous_session,
    should_record_session,
)
from .violations import apply_trust_penalty, create_violation_in_transaction

logger = logging.getLogger(__name__)


@dataclass
class QualityChange:
    session_id: int
    previous_quality: Optional[str]
    new_quality: Optional[str]
    restarted: bool = False  # The server started a new stream key for the same media


@dataclass
class SessionCreationInput:
    server_id: int
    server_user_id: int
    snapshot: SessionSnapshot
    now: datetime
    recent_sessions: Optional[List[Session]] = None  # Loaded when not supplied
    active_rules: Optional[List[RuleDefinition]] = None  # Loaded when not supplied


@dataclass
class SessionCreationResult:
    session: Session
    violations: List[Violation] = field(default_factory=list)
    created: bool = True
    quality_change: Optional[QualityChange] = None
    stopped_sessions: List[Session] = field(default_factory=list)

    @property
    def reference_id(self) -> Optional[int]:
        return self.session.reference_id


@dataclass
class SessionUpdateInput:
    server_id: int
    session_id: int
    snapshot: SessionSnapshot
    now: datetime


@dataclass
class SessionUpdateResult:
    session: Session
    updated: bool
    state_changed: bool = False
    quality_change: Optional[QualityChange] = None


@dataclass
class SessionStopInput:
    session_id: int
    stopped_at: datetime
    force_stopped: bool = False
    preserve_watched: bool = False
    progress_ms: Optional[int] = None  # Later position to adopt before finalizing
    seen_before: Optional[datetime] = None  # Only stop if not observed since this time


@dataclass
class SessionStopResult:
    session: Session
    duration_ms: int
    watched: bool
    short_session: bool
    was_updated: bool


class SessionLifecycleManager:
    """Sole writer of session and violation rows"""

    def __init__(
        self,
        session_factory: Callable[[], DBSession] = SessionLocal,
        engine: RuleEngine = default_rule_engine,
        config: Settings = default_settings,
    ):
        self.session_factory = session_factory
        self.rule_engine = engine
        self.config = config
        self._locks = KeyedLock()

    # Completion

    def _is_watched(self, session: Session, progress_ms: Optional[int], total_duration_ms: Optional[int]) -> bool:
        if session.watched:
            return True
        if not is_completion_eligible(session.media_type):
            return False
        return check_watch_completion(progress_ms, total_duration_ms, self.config.watch_completion_threshold)

    # Create

    async def create_session_with_rules_atomic(self, data: SessionCreationInput) -> SessionCreationResult:
        """
        Create the session for a newly observed key, evaluate rules and store
        violations in one transaction.

        Returns the existing row with created=False when the key is already
        active, whether that row was found up front or won a race with another
        process at insert time.
        """
        key = (data.server_id, data.snapshot.session_key)
        async with self._locks.acquire(key):
            db = self.session_factory()
            try:
                return self._create_locked(db, data)
            except IntegrityError:
                db.rollback()
                return self._resolve_create_conflict(db, data)
            except SQLAlchemyError as e:
                db.rollback()
                raise SessionPersistenceError(f"Failed to create session {key}: {e}") from e
            finally:
                db.close()

    async def handle_media_change_atomic(self, data: SessionCreationInput) -> SessionCreationResult:
        """
        The server reused an active session key for different media: stop the
        old session and create the new one in the same transaction.
        """
        key = (data.server_id, data.snapshot.session_key)
        async with self._locks.acquire(key):
            db = self.session_factory()
            try:
                existing = session_queries.find_active_session(db, data.server_id, data.snapshot.session_key)
                stopped = []
                if existing is not None and detect_media_change(existing.rating_key, data.snapshot.rating_key):
                    logger.info(f"Media changed on session key {key}: {existing.rating_key} -> {data.snapshot.rating_key}")
                    if self._finalize_stop(db, existing, data.now) is not None:
                        stopped.append(existing)
                return self._create_locked(db, data, stopped)
            except IntegrityError:
                db.rollback()
                return self._resolve_create_conflict(db, data)
            except SQLAlchemyError as e:
                db.rollback()
                raise SessionPersistenceError(f"Failed to switch media for session {key}: {e}") from e
            finally:
                db.close()

    def _resolve_create_conflict(self, db: DBSession, data: SessionCreationInput) -> SessionCreationResult:
        existing = session_queries.find_active_session(db, data.server_id, data.snapshot.session_key)
        if existing is None:
            raise SessionPersistenceError(
                f"Insert conflict for session key {data.snapshot.session_key} on server {data.server_id} but no active row found"
            )
        logger.info(f"Session key {data.snapshot.session_key} on server {data.server_id} created concurrently, using session {existing.id}")
        return SessionCreationResult(session=existing, created=False)

    def _create_locked(
        self,
        db: DBSession,
        data: SessionCreationInput,
        stopped_sessions: Optional[List[Session]] = None,
    ) -> SessionCreationResult:
        snapshot = data.snapshot
        now = data.now
        stopped_sessions = list(stopped_sessions or [])

        existing = session_queries.find_active_session(db, data.server_id, snapshot.session_key)
        if existing is not None:
            quality_change = self._apply_quality_change(db, existing, snapshot)
            db.commit()
            return SessionCreationResult(session=existing, created=False, quality_change=quality_change,
                                         stopped_sessions=stopped_sessions)

        reference_id = None
        quality_change = None
        if snapshot.rating_key:
            restarted = session_queries.find_active_session_for_media(
                db, data.server_id, data.server_user_id, snapshot.rating_key, snapshot.session_key
            )
            if restarted is not None:
                # New stream key for media this user is already playing
                logger.info(f"Quality change restart: session {restarted.id} continues as key {snapshot.session_key}")
                if self._finalize_stop(db, restarted, now, preserve_watched=True) is not None:
                    stopped_sessions.append(restarted)
                reference_id = chain_head_id(restarted)
                quality_change = QualityChange(
                    session_id=restarted.id,
                    previous_quality=restarted.quality,
                    new_quality=format_quality_string(snapshot),
                    restarted=True,
                )
            else:
                since = now - timedelta(hours=self.config.resume_window_hours)
                previous = session_queries.find_recent_stopped_for_media(
                    db, data.server_user_id, snapshot.rating_key, since
                )
                if previous is not None:
                    reference_id = should_group_with_previous_session(
                        previous,
                        snapshot.progress_ms,
                        now,
                        self.config.grouping_window_ms,
                        self.config.resume_window_hours,
                    )
                    if reference_id is not None:
                        logger.debug(f"Grouping new play of {snapshot.rating_key} with session chain {reference_id}")

        session = Session(
            server_id=data.server_id,
            server_user_id=data.server_user_id,
            reference_id=reference_id,
            started_at=now,
            last_seen_at=now,
            last_paused_at=now if snapshot.state == "paused" else None,
            paused_duration_ms=0,
            watched=False,
            short_session=False,
            force_stopped=False,
            **new_session_values(snapshot),
        )
        session.watched = self._is_watched(session, snapshot.progress_ms, snapshot.total_duration_ms)
        db.add(session)
        db.flush()

        excluded = {s.id for s in stopped_sessions}
        violations = self._evaluate_rules(db, session, data, excluded)

        db.commit()
        logger.info(f"Created session {session.id} for key {snapshot.session_key} on server {data.server_id}")
        return SessionCreationResult(
            session=session,
            violations=violations,
            created=True,
            quality_change=quality_change,
            stopped_sessions=stopped_sessions,
        )

    def _evaluate_rules(self, db: DBSession, session: Session, data: SessionCreationInput, excluded_ids) -> List[Violation]:
        rules = data.active_rules
        if rules is None:
            rules = session_queries.get_active_rules(db)
        if not rules:
            return []

        history = data.recent_sessions
        if history is None:
            since = data.now - timedelta(hours=self.config.recent_history_hours)
            history = session_queries.batch_get_recent_user_sessions(
                db, [session.server_user_id], since, self.config.max_recent_sessions_per_user
            ).get(session.server_user_id, [])
        history = [s for s in history if s.id not in excluded_ids]

        violations = []
        total_penalty = 0
        for rule in sorted(rules, key=lambda r: r.id):
            if not does_rule_apply_to_user(rule, session.server_user_id):
                continue
            try:
                result = self.rule_engine.evaluate_rule(rule, session, history)
            except Exception as e:
                logger.error(f"Rule {rule.id} ({rule.type}) failed for session {session.id}: {e}")
                continue
            if not result.violated:
                continue

            violation = create_violation_in_transaction(
                db, rule, session.server_user_id, session.id, result, data.now,
                self.config.violation_dedup_window_ms,
            )
            if violation is not None:
                violations.append(violation)
                total_penalty += violation.trust_penalty

        apply_trust_penalty(db, session.server_user_id, total_penalty, self.config.trust_score_floor)
        if violations:
            logger.info(f"Session {session.id} triggered {len(violations)} violations, trust penalty {total_penalty}")
        return violations

    def _apply_quality_change(self, db: DBSession, session: Session, snapshot: SessionSnapshot) -> Optional[QualityChange]:
        if not detect_quality_change(session, snapshot):
            return None
        change = QualityChange(
            session_id=session.id,
            previous_quality=session.quality,
            new_quality=format_quality_string(snapshot),
        )
        updated = db.query(Session).filter(
            Session.id == session.id,
            Session.stopped_at.is_(None),
        ).update(quality_values(snapshot))
        if not updated:
            return None
        logger.info(f"Quality changed on session {session.id}: {change.previous_quality} -> {change.new_quality}")
        return change

    # Update

    async def update_session_atomic(self, data: SessionUpdateInput) -> SessionUpdateResult:
        """Apply a continued observation: pause accounting, position, last seen, quality"""
        key = (data.server_id, data.snapshot.session_key)
        async with self._locks.acquire(key):
            db = self.session_factory()
            try:
                session = db.get(Session, data.session_id)
                if session is None:
                    raise SessionNotFoundError(data.session_id)
                if session.stopped_at is not None:
                    return SessionUpdateResult(session=session, updated=False)

                snapshot = data.snapshot
                previous_state = session.state
                new_state = "paused" if snapshot.state == "paused" else "playing"
                pause = calculate_pause_accumulation(
                    previous_state,
                    new_state,
                    session.last_paused_at,
                    session.paused_duration_ms,
                    data.now,
                    snapshot.last_paused_at,
                )

                progress_ms = snapshot.progress_ms if snapshot.progress_ms is not None else session.progress_ms
                total_duration_ms = snapshot.total_duration_ms or session.total_duration_ms
                values: Dict[str, Any] = {
                    "state": new_state,
                    "last_paused_at": pause.last_paused_at,
                    "paused_duration_ms": pause.paused_duration_ms,
                    "last_seen_at": data.now,
                    "progress_ms": progress_ms,
                    "total_duration_ms": total_duration_ms,
                    "watched": self._is_watched(session, progress_ms, total_duration_ms),
                }
                if snapshot.ip_address:
                    values["ip_address"] = snapshot.ip_address

                quality_change = self._apply_quality_change(db, session, snapshot)

                updated = db.query(Session).filter(
                    Session.id == session.id,
                    Session.stopped_at.is_(None),
                ).update(values)
                if not updated:
                    db.rollback()
                    db.refresh(session)
                    return SessionUpdateResult(session=session, updated=False)

                db.commit()
                return SessionUpdateResult(
                    session=session,
                    updated=True,
                    state_changed=previous_state != new_state,
                    quality_change=quality_change,
                )
            except SQLAlchemyError as e:
                db.rollback()
                raise SessionPersistenceError(f"Failed to update session {data.session_id}: {e}") from e
            finally:
                db.close()

    # Stop

    def _finalize_stop(
        self,
        db: DBSession,
        session: Session,
        stopped_at: datetime,
        force_stopped: bool = False,
        preserve_watched: bool = False,
        progress_ms: Optional[int] = None,
        seen_before: Optional[datetime] = None,
    ) -> Optional[SessionStopResult]:
        """Conditional UPDATE of an active row; None when the row was already stopped"""
        if progress_ms is None or (session.progress_ms is not None and progress_ms < session.progress_ms):
            progress_ms = session.progress_ms

        stop = calculate_stop_duration(
            session.started_at,
            stopped_at,
            session.paused_duration_ms,
            session.last_paused_at,
            progress_ms,
        )
        if preserve_watched:
            watched = bool(session.watched)
        else:
            watched = self._is_watched(session, progress_ms, session.total_duration_ms)
        short_session = not should_record_session(stop.duration_ms, self.config.min_play_time_ms)

        query = db.query(Session).filter(
            Session.id == session.id,
            Session.stopped_at.is_(None),
        )
        if seen_before is not None:
            query = query.filter(Session.last_seen_at < seen_before)
        updated = query.update({
            "state": "stopped",
            "stopped_at": stopped_at,
            "duration_ms": stop.duration_ms,
            "paused_duration_ms": stop.final_paused_duration_ms,
            "last_paused_at": None,
            "progress_ms": progress_ms,
            "watched": watched,
            "short_session": short_session,
            "force_stopped": force_stopped,
        })
        if not updated:
            return None

        return SessionStopResult(
            session=session,
            duration_ms=stop.duration_ms,
            watched=watched,
            short_session=short_session,
            was_updated=True,
        )

    async def stop_session_atomic(self, data: SessionStopInput) -> SessionStopResult:
        """
        Finalize duration and completion and mark the session stopped.

        Idempotent: stopping an already stopped session returns its stored
        terminal values with was_updated=False.
        """
        db = self.session_factory()
        try:
            session = db.get(Session, data.session_id)
            if session is None:
                raise SessionNotFoundError(data.session_id)
            key = (session.server_id, session.session_key)
        finally:
            db.close()

        async with self._locks.acquire(key):
            db = self.session_factory()
            try:
                session = db.get(Session, data.session_id)
                if session is None:
                    raise SessionNotFoundError(data.session_id)
                result = None
                if session.stopped_at is None:
                    result = self._finalize_stop(
                        db, session, data.stopped_at, data.force_stopped, data.preserve_watched, data.progress_ms,
                        data.seen_before,
                    )

                if result is None:
                    db.rollback()
                    session = db.get(Session, data.session_id, populate_existing=True)
                    return SessionStopResult(
                        session=session,
                        duration_ms=session.duration_ms or 0,
                        watched=bool(session.watched),
                        short_session=bool(session.short_session),
                        was_updated=False,
                    )

                db.commit()
                logger.info(
                    f"Stopped session {session.id} ({'forced' if data.force_stopped else 'normal'}): "
                    f"{result.duration_ms // 1000}s played, watched={result.watched}, short={result.short_session}"
                )
                return result
            except SQLAlchemyError as e:
                db.rollback()
                raise SessionPersistenceError(f"Failed to stop session {data.session_id}: {e}") from e
            finally:
                db.close()


# Global instance
session_lifecycle = SessionLifecycleManager()
