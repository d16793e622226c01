class StreamWardenError(Exception):
    """Base error for session tracking"""


class SnapshotFetchError(StreamWardenError):
    """A media server could not be polled; the cycle for that server is skipped"""

    def __init__(self, server_id: int, message: str):
        super().__init__(f"Snapshot fetch failed for server {server_id}: {message}")
        self.server_id = server_id


class SessionPersistenceError(StreamWardenError):
    """A create or stop could not be written after the session key was locked"""


class SessionNotFoundError(StreamWardenError):
    def __init__(self, session_id: int):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class RuleConfigurationError(StreamWardenError):
    """Rule params do not match the rule type"""

    def __init__(self, rule_id: int, message: str):
        super().__init__(f"Rule {rule_id} is misconfigured: {message}")
        self.rule_id = rule_id
