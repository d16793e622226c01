from .rule_engine import RuleEngine
from .session_lifecycle import SessionLifecycleManager
from .session_poller import SessionPoller
from .push_events import PushEventProcessor

__all__ = [
    "RuleEngine",
    "SessionLifecycleManager",
    "SessionPoller",
    "PushEventProcessor"
]
