"""
Violation persistence: de-duplication, insertion and trust score penalties.

All functions take the caller's SQLAlchemy session and never commit, so they
run inside the session-creation transaction.
"""
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import case
from sqlalchemy.orm import Session as DBSession

from ..core.constants import TRUST_SCORE_FLOOR, VIOLATION_DEDUP_WINDOW_MS
from ..models.server_user import ServerUser
from ..models.violation import Violation
from ..schemas.rule import MULTI_SESSION_RULE_TYPES, RuleDefinition
from .rule_engine import RuleEvaluationResult, penalty_for_severity

logger = logging.getLogger(__name__)


def _recent_violations(db: DBSession, server_user_id: int, rule_type: str, since: datetime) -> List[Violation]:
    return db.query(Violation).filter(
        Violation.server_user_id == server_user_id,
        Violation.rule_type == rule_type,
        Violation.acknowledged_at.is_(None),
        Violation.created_at >= since,
    ).all()


def is_duplicate_violation(
    recent: Iterable[Violation],
    rule_type: str,
    triggering_session_id: int,
    related_session_ids: List[int],
) -> bool:
    """
    Whether an unacknowledged violation already covers this event.

    Single-session rules are duplicates when the same session already
    triggered them. Multi-session rules are duplicates on any overlap between
    the sessions involved.
    """
    recent = list(recent)
    if not recent:
        return False

    if rule_type not in MULTI_SESSION_RULE_TYPES:
        return any(existing.session_id == triggering_session_id for existing in recent)

    related = set(related_session_ids)
    for existing in recent:
        existing_related = set((existing.data or {}).get("related_session_ids", []))
        if triggering_session_id in existing_related:
            return True
        if existing.session_id in related:
            return True
        if related & existing_related:
            return True
    return False


def create_violation_in_transaction(
    db: DBSession,
    rule: RuleDefinition,
    server_user_id: int,
    session_id: int,
    result: RuleEvaluationResult,
    now: datetime,
    dedup_window_ms: int = VIOLATION_DEDUP_WINDOW_MS,
) -> Optional[Violation]:
    """Insert one violation unless it duplicates a recent one; returns None when skipped"""
    since = now - timedelta(milliseconds=dedup_window_ms)
    recent = _recent_violations(db, server_user_id, rule.type, since)
    if is_duplicate_violation(recent, rule.type, session_id, result.related_session_ids):
        logger.info(f"Skipping duplicate {rule.type} violation for session {session_id}")
        return None

    violation = Violation(
        rule_id=rule.id,
        server_user_id=server_user_id,
        session_id=session_id,
        rule_type=rule.type,
        severity=result.severity,
        trust_penalty=penalty_for_severity(result.severity),
        data=result.data,
        created_at=now,
    )

    db.add(violation)
    db.flush()
    return violation


def apply_trust_penalty(db: DBSession, server_user_id: int, penalty: int, floor: int = TRUST_SCORE_FLOOR) -> None:
    """Decrement the trust score in SQL, never below the floor"""
    if penalty <= 0:
        return

    new_score = ServerUser.trust_score - penalty
    db.query(ServerUser).filter(ServerUser.id == server_user_id).update(
        {ServerUser.trust_score: case((new_score < floor, floor), else_=new_score)},
        synchronize_session=False,
    )
