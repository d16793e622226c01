"""Default timings and thresholds for session tracking."""

DEFAULT_POLL_INTERVAL_MS = 15 * 1000
STALE_SWEEP_INTERVAL_MS = 60 * 1000
# Full reconciliation cadence; push-connected servers are only polled by these
RECONCILIATION_INTERVAL_MS = 30 * 1000
SNAPSHOT_FETCH_TIMEOUT_SECONDS = 10.0

STALE_SESSION_TIMEOUT_MS = 5 * 60 * 1000
MIN_PLAY_TIME_MS = 120 * 1000
WATCH_COMPLETION_THRESHOLD = 0.85

# A new session starting this soon after a stop for the same media is a resume
CONTINUED_SESSION_THRESHOLD_MS = 60 * 1000
# Outer bound for resume lookups
RESUME_WINDOW_HOURS = 24

RECENT_HISTORY_HOURS = 24
MAX_RECENT_PER_USER = 100

# Stop duration may exceed reported progress by at most this much
PROGRESS_OVERRUN_TOLERANCE_MS = 60 * 1000

VIOLATION_DEDUP_WINDOW_MS = 5 * 60 * 1000
TRUST_SCORE_DEFAULT = 100
TRUST_SCORE_FLOOR = 0

SEVERITY_PENALTIES = {
    "high": 20,
    "warning": 10,
    "low": 5,
}

# Media types that never count toward watch completion
COMPLETION_EXCLUDED_MEDIA_TYPES = frozenset({"live", "photo"})

EVENTS_CHANNEL = "streamwarden:events"
CACHE_KEY_PREFIX = "streamwarden"
