"""
Session parsing shared by Jellyfin and Emby, which expose the same /Sessions shape
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.database import to_naive_utc
from ..schemas.snapshot import SessionSnapshot

logger = logging.getLogger(__name__)

TICKS_PER_MS = 10000

MEDIABROWSER_MEDIA_TYPES = {
    "movie": "movie",
    "episode": "episode",
    "audio": "track",
    "tvchannel": "live",
    "livetvchannel": "live",
    "livetvprogram": "live",
    "photo": "photo",
}


def _ticks_to_ms(ticks) -> Optional[int]:
    if ticks is None:
        return None
    return int(ticks) // TICKS_PER_MS


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse MediaBrowser ISO timestamps (7-digit fractions, trailing Z) into naive UTC"""
    if not value:
        return None
    try:
        text = value.rstrip("Z")
        if "." in text:
            head, fraction = text.split(".", 1)
            text = f"{head}.{fraction[:6]}"
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return to_naive_utc(parsed)


def _media_type(item: Dict[str, Any]) -> str:
    kind = (item.get("Type") or "").lower()
    if kind in MEDIABROWSER_MEDIA_TYPES:
        return MEDIABROWSER_MEDIA_TYPES[kind]
    media_type = (item.get("MediaType") or "").lower()
    if media_type == "audio":
        return "track"
    if media_type == "photo":
        return "photo"
    return "unknown"


def _resolution(item: Dict[str, Any]) -> Optional[str]:
    for stream in item.get("MediaStreams") or []:
        if stream.get("Type") != "Video":
            continue
        height = stream.get("Height")
        if not height:
            return None
        if height >= 2160:
            return "4K"
        return f"{height}p"
    return None


def parse_mediabrowser_sessions(sessions: List[Dict[str, Any]]) -> List[SessionSnapshot]:
    """Normalize a Jellyfin or Emby /Sessions payload, skipping idle connections"""
    snapshots = []

    for session in sessions or []:
        item = session.get("NowPlayingItem")
        if not item or not session.get("UserId") or not session.get("Id"):
            continue

        play_state = session.get("PlayState") or {}
        transcoding = session.get("TranscodingInfo") or {}
        media_type = _media_type(item)

        is_transcode = play_state.get("PlayMethod") == "Transcode"
        if is_transcode:
            video_decision = "copy" if transcoding.get("IsVideoDirect") else "transcode"
            audio_decision = "copy" if transcoding.get("IsAudioDirect") else "transcode"
        else:
            video_decision = "directplay"
            audio_decision = "directplay"

        bitrate = transcoding.get("Bitrate")
        if bitrate is None:
            sources = item.get("MediaSources") or []
            bitrate = sources[0].get("Bitrate") if sources else None

        snapshots.append(SessionSnapshot(
            session_key=session["Id"],
            rating_key=item.get("Id"),
            external_user_id=session["UserId"],
            username=session.get("UserName") or session["UserId"],
            user_thumb=f"/Users/{session['UserId']}/Images/Primary" if session.get("UserPrimaryImageTag") else None,
            state="paused" if play_state.get("IsPaused") else "playing",
            media_type=media_type,
            media_title=item.get("Name"),
            grandparent_title=item.get("SeriesName"),
            season_number=item.get("ParentIndexNumber") if media_type == "episode" else None,
            episode_number=item.get("IndexNumber") if media_type == "episode" else None,
            year=item.get("ProductionYear"),
            thumb_path=f"/Items/{item['Id']}/Images/Primary" if item.get("Id") else None,
            progress_ms=_ticks_to_ms(play_state.get("PositionTicks")),
            total_duration_ms=_ticks_to_ms(item.get("RunTimeTicks")),
            last_paused_at=_parse_date(session.get("LastPausedDate")) if play_state.get("IsPaused") else None,
            ip_address=session.get("RemoteEndPoint"),
            player_name=session.get("DeviceName"),
            device_id=session.get("DeviceId"),
            product=session.get("Client"),
            device=session.get("DeviceName"),
            platform=session.get("Client"),
            quality=_resolution(item),
            is_transcode=is_transcode,
            video_decision=video_decision,
            audio_decision=audio_decision,
            bitrate=bitrate // 1000 if bitrate else None,
        ))

    return snapshots
