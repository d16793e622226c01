from typing import Any, Dict, Optional

from ..schemas.session import SessionResponse, ViolationResponse
from ..schemas.snapshot import SessionSnapshot


def format_quality_string(snapshot: SessionSnapshot) -> Optional[str]:
    """Short label such as "Transcode (4.0 Mbps)" for display"""
    if snapshot.quality:
        return snapshot.quality
    label = "Transcode" if snapshot.is_transcode else "Direct"
    if snapshot.bitrate:
        return f"{label} ({snapshot.bitrate / 1000:.1f} Mbps)"
    return label


def media_values(snapshot: SessionSnapshot) -> Dict[str, Any]:
    """Columns describing what is playing"""
    return {
        "rating_key": snapshot.rating_key,
        "media_type": snapshot.media_type or "unknown",
        "media_title": snapshot.media_title,
        "grandparent_title": snapshot.grandparent_title,
        "season_number": snapshot.season_number,
        "episode_number": snapshot.episode_number,
        "year": snapshot.year,
        "thumb_path": snapshot.thumb_path,
        "total_duration_ms": snapshot.total_duration_ms,
    }


def quality_values(snapshot: SessionSnapshot) -> Dict[str, Any]:
    return {
        "quality": format_quality_string(snapshot),
        "is_transcode": snapshot.is_transcode,
        "video_decision": snapshot.video_decision,
        "audio_decision": snapshot.audio_decision,
        "bitrate": snapshot.bitrate,
    }


def new_session_values(snapshot: SessionSnapshot) -> Dict[str, Any]:
    """Column values for a session first seen in `snapshot`"""
    values = {
        "session_key": snapshot.session_key,
        "state": "paused" if snapshot.state == "paused" else "playing",
        "progress_ms": snapshot.progress_ms,
        "ip_address": snapshot.ip_address,
        "player_name": snapshot.player_name,
        "device_id": snapshot.device_id,
        "product": snapshot.product,
        "device": snapshot.device,
        "platform": snapshot.platform,
    }
    values.update(media_values(snapshot))
    values.update(quality_values(snapshot))
    return values


def serialize_session(session) -> Dict[str, Any]:
    """JSON-ready payload for pub/sub and cache"""
    return SessionResponse.model_validate(session).model_dump(mode="json")


def serialize_violation(violation) -> Dict[str, Any]:
    return ViolationResponse.model_validate(violation).model_dump(mode="json")
