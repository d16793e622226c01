"""
Shared fixtures: a file-backed SQLite database per test and small row builders
"""
import pytest
from datetime import datetime
from sqlalchemy.orm import sessionmaker

from streamwarden.core.config import Settings
from streamwarden.core.database import build_engine
from streamwarden.models import Base, Server, ServerType, ServerUser, Rule
from streamwarden.schemas.snapshot import SessionSnapshot
from streamwarden.services.rule_engine import RuleEngine
from streamwarden.services.session_lifecycle import SessionLifecycleManager

NOW = datetime(2024, 6, 1, 20, 0, 0)


@pytest.fixture
def engine(tmp_path):
    """Create a fresh SQLite database with all tables"""
    engine = build_engine(f"sqlite:///{tmp_path / 'streamwarden-test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    """A database session for arranging and asserting"""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        min_play_time_ms=120000,
        watch_completion_threshold=0.85,
        grouping_window_ms=60000,
        stale_session_timeout_ms=300000,
        snapshot_fetch_timeout_seconds=1.0,
        violation_dedup_window_ms=300000,
        trust_score_floor=0,
    )


@pytest.fixture
def lifecycle(session_factory, test_settings):
    return SessionLifecycleManager(session_factory=session_factory, engine=RuleEngine(), config=test_settings)


@pytest.fixture
def server(db):
    server = Server(name="Living Room Plex", type=ServerType.plex, base_url="http://plex.local:32400", enabled=True)
    db.add(server)
    db.commit()
    return server


@pytest.fixture
def server_user(db, server):
    user = ServerUser(server_id=server.id, external_id="u-1", username="alice", trust_score=100)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def make_rule(db):
    def _make_rule(rule_type, params, server_user_id=None, name=None, is_active=True):
        rule = Rule(
            name=name or rule_type,
            type=rule_type,
            params=params,
            server_user_id=server_user_id,
            is_active=is_active,
        )
        db.add(rule)
        db.commit()
        return rule
    return _make_rule


def make_snapshot(**overrides) -> SessionSnapshot:
    """Snapshot for a 100 minute movie watched by u-1"""
    values = {
        "session_key": "sk1",
        "rating_key": "rk-100",
        "external_user_id": "u-1",
        "username": "alice",
        "state": "playing",
        "media_type": "movie",
        "media_title": "Heat",
        "progress_ms": 0,
        "total_duration_ms": 6000000,
        "ip_address": "10.0.0.5",
        "player_name": "Living Room TV",
        "is_transcode": False,
        "video_decision": "directplay",
        "bitrate": 8000,
    }
    values.update(overrides)
    return SessionSnapshot(**values)
