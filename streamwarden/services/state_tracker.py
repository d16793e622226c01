"""
Pure session state calculations.

Nothing here touches the database or the clock; callers pass `now` in.
"""
import logging
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from ..core.constants import (
    COMPLETION_EXCLUDED_MEDIA_TYPES,
    CONTINUED_SESSION_THRESHOLD_MS,
    MIN_PLAY_TIME_MS,
    PROGRESS_OVERRUN_TOLERANCE_MS,
    RESUME_WINDOW_HOURS,
    STALE_SESSION_TIMEOUT_MS,
    WATCH_COMPLETION_THRESHOLD,
)

logger = logging.getLogger(__name__)


class PauseAccumulationResult(NamedTuple):
    last_paused_at: Optional[datetime]
    paused_duration_ms: int


class StopDurationResult(NamedTuple):
    duration_ms: int
    final_paused_duration_ms: int


def _elapsed_ms(start: datetime, end: datetime) -> int:
    """Milliseconds from start to end, clamped so clock skew never goes negative"""
    return max(0, int((end - start).total_seconds() * 1000))


def calculate_pause_accumulation(
    previous_state: str,
    new_state: str,
    last_paused_at: Optional[datetime],
    paused_duration_ms: int,
    now: datetime,
    reported_paused_at: Optional[datetime] = None,
) -> PauseAccumulationResult:
    """Open a pause window on playing -> paused, close it on paused -> playing"""
    paused_duration_ms = paused_duration_ms or 0

    if previous_state == "playing" and new_state == "paused":
        # Prefer the server's own pause timestamp when it is plausible
        if reported_paused_at is not None and reported_paused_at <= now:
            last_paused_at = reported_paused_at
        else:
            last_paused_at = now
    elif previous_state == "paused" and new_state == "playing":
        if last_paused_at is not None:
            paused_duration_ms += _elapsed_ms(last_paused_at, now)
        last_paused_at = None

    return PauseAccumulationResult(last_paused_at, paused_duration_ms)


def calculate_stop_duration(
    started_at: datetime,
    stopped_at: datetime,
    paused_duration_ms: int,
    last_paused_at: Optional[datetime] = None,
    progress_ms: Optional[int] = None,
) -> StopDurationResult:
    """
    Final played time for a session stopping at `stopped_at`.

    An open pause window counts as paused time. When the server reported a
    position, played time is capped at that position plus a small tolerance and
    the excess is booked as paused, so duration + paused always equals elapsed.
    """
    elapsed_ms = _elapsed_ms(started_at, stopped_at)

    final_paused_ms = paused_duration_ms or 0
    if last_paused_at is not None:
        final_paused_ms += _elapsed_ms(last_paused_at, stopped_at)
    final_paused_ms = min(final_paused_ms, elapsed_ms)

    duration_ms = elapsed_ms - final_paused_ms

    if progress_ms is not None and progress_ms > 0:
        max_duration_ms = progress_ms + PROGRESS_OVERRUN_TOLERANCE_MS
        if duration_ms > max_duration_ms:
            logger.debug(f"Duration capped: {duration_ms // 1000}s -> {max_duration_ms // 1000}s (progress {progress_ms // 1000}s)")
            final_paused_ms += duration_ms - max_duration_ms
            duration_ms = max_duration_ms

    return StopDurationResult(duration_ms, final_paused_ms)


def should_force_stop_stale_session(
    last_seen_at: datetime,
    now: datetime,
    timeout_ms: int = STALE_SESSION_TIMEOUT_MS,
) -> bool:
    # At exactly the timeout a session is not stale yet
    return (now - last_seen_at) > timedelta(milliseconds=timeout_ms)


def should_record_session(duration_ms: int, min_play_time_ms: int = MIN_PLAY_TIME_MS) -> bool:
    """Whether a play counts toward statistics; short plays are kept but flagged"""
    if min_play_time_ms == 0:
        return True
    return duration_ms >= min_play_time_ms


def is_completion_eligible(media_type: Optional[str]) -> bool:
    return media_type not in COMPLETION_EXCLUDED_MEDIA_TYPES


def check_watch_completion(
    progress_ms: Optional[int],
    total_duration_ms: Optional[int],
    threshold: float = WATCH_COMPLETION_THRESHOLD,
) -> bool:
    if not progress_ms or not total_duration_ms:
        return False
    return progress_ms / total_duration_ms >= threshold


def detect_media_change(existing_rating_key: Optional[str], new_rating_key: Optional[str]) -> bool:
    """Same session key now playing different media (vendors reuse keys across episodes)"""
    if existing_rating_key is None or new_rating_key is None:
        return False
    return existing_rating_key != new_rating_key


def detect_quality_change(session, snapshot) -> bool:
    """Transcode decision or bitrate changed mid-play"""
    if bool(session.is_transcode) != bool(snapshot.is_transcode):
        return True
    if snapshot.video_decision is not None and session.video_decision != snapshot.video_decision:
        return True
    if snapshot.bitrate is not None and session.bitrate is not None and session.bitrate != snapshot.bitrate:
        return True
    return False


def chain_head_id(session) -> int:
    return session.reference_id or session.id


def should_group_with_previous_session(
    previous_session,
    new_progress_ms: Optional[int],
    now: datetime,
    grouping_window_ms: int = CONTINUED_SESSION_THRESHOLD_MS,
    max_window_hours: int = RESUME_WINDOW_HOURS,
) -> Optional[int]:
    """
    Return the chain head id when a new play resumes `previous_session`.

    The previous session must have stopped within the grouping window (and
    never longer ago than `max_window_hours`), must not have been watched to
    completion, and the new play must start at or after its position.
    """
    stopped_at = previous_session.stopped_at
    if stopped_at is None:
        return None

    if stopped_at < now - timedelta(hours=max_window_hours):
        return None

    if now - stopped_at > timedelta(milliseconds=grouping_window_ms):
        return None

    if previous_session.watched:
        return None

    if (new_progress_ms or 0) >= (previous_session.progress_ms or 0):
        return chain_head_id(previous_session)

    return None
