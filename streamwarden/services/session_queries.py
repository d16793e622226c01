"""
Query helpers for session tracking. Each helper issues a single query.
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import distinct, func
from sqlalchemy.orm import Session as DBSession

from ..core.exceptions import RuleConfigurationError
from ..models.rule import Rule
from ..models.session import Session
from ..schemas.rule import RuleDefinition, load_rule_definition

logger = logging.getLogger(__name__)


def find_active_session(db: DBSession, server_id: int, session_key: str) -> Optional[Session]:
    return db.query(Session).filter(
        Session.server_id == server_id,
        Session.session_key == session_key,
        Session.stopped_at.is_(None),
    ).first()


def find_active_sessions_for_server(db: DBSession, server_id: int) -> List[Session]:
    return db.query(Session).filter(
        Session.server_id == server_id,
        Session.stopped_at.is_(None),
    ).all()


def find_active_session_for_media(
    db: DBSession,
    server_id: int,
    server_user_id: int,
    rating_key: str,
    exclude_session_key: str,
) -> Optional[Session]:
    """Another active session of the same user on the same media, i.e. a quality change restart"""
    return db.query(Session).filter(
        Session.server_id == server_id,
        Session.server_user_id == server_user_id,
        Session.rating_key == rating_key,
        Session.session_key != exclude_session_key,
        Session.stopped_at.is_(None),
    ).order_by(Session.started_at.desc()).first()


def find_recent_stopped_for_media(
    db: DBSession,
    server_user_id: int,
    rating_key: str,
    since: datetime,
) -> Optional[Session]:
    """Most recently stopped, unwatched session of this user on this media"""
    return db.query(Session).filter(
        Session.server_user_id == server_user_id,
        Session.rating_key == rating_key,
        Session.stopped_at.isnot(None),
        Session.stopped_at >= since,
        Session.watched.is_(False),
    ).order_by(Session.stopped_at.desc(), Session.id.desc()).first()


def find_stale_sessions(db: DBSession, cutoff: datetime) -> List[Session]:
    """Active sessions not observed since `cutoff`"""
    return db.query(Session).filter(
        Session.stopped_at.is_(None),
        Session.last_seen_at < cutoff,
    ).order_by(Session.last_seen_at).all()


def batch_get_recent_user_sessions(
    db: DBSession,
    server_user_ids: Iterable[int],
    since: datetime,
    limit_per_user: int,
) -> Dict[int, List[Session]]:
    """Recent sessions for many users in one query, newest first, capped per user"""
    ids = sorted(set(server_user_ids))
    result: Dict[int, List[Session]] = defaultdict(list)
    if not ids:
        return result

    rows = db.query(Session).filter(
        Session.server_user_id.in_(ids),
        Session.started_at >= since,
    ).order_by(Session.server_user_id, Session.started_at.desc()).all()

    for row in rows:
        bucket = result[row.server_user_id]
        if len(bucket) < limit_per_user:
            bucket.append(row)

    return result


def get_active_rules(db: DBSession) -> List[RuleDefinition]:
    """Active rules in id order; rules with invalid params are logged and left out"""
    rules = db.query(Rule).filter(Rule.is_active.is_(True)).order_by(Rule.id).all()

    definitions = []
    for rule in rules:
        try:
            definitions.append(load_rule_definition(rule))
        except RuleConfigurationError as e:
            logger.warning(f"Skipping rule {rule.id} ({rule.name}): {e}")
    return definitions


def count_unique_plays(db: DBSession, server_user_id: Optional[int] = None) -> int:
    """Distinct plays, where a resumed chain counts once and short plays not at all"""
    query = db.query(func.count(distinct(func.coalesce(Session.reference_id, Session.id)))).filter(
        Session.short_session.is_(False),
    )
    if server_user_id is not None:
        query = query.filter(Session.server_user_id == server_user_id)
    return query.scalar() or 0
