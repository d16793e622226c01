import httpx
import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import List, Optional
from .base import BaseProvider
from ..core.config import settings
from ..core.exceptions import SnapshotFetchError
from ..schemas.snapshot import SessionSnapshot, HistoryEntry

logger = logging.getLogger(__name__)

PLEX_MEDIA_TYPES = {
    "movie": "movie",
    "episode": "episode",
    "track": "track",
    "photo": "photo",
    "clip": "unknown",
}


def _int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except ValueError:
        return None


def _format_resolution(resolution: Optional[str]) -> Optional[str]:
    if not resolution:
        return None
    if resolution.lower() == "4k":
        return "4K"
    if resolution.isdigit():
        return f"{resolution}p"
    return resolution.upper()


def parse_plex_sessions(xml_text: str) -> List[SessionSnapshot]:
    """Normalize a /status/sessions MediaContainer"""
    root = ET.fromstring(xml_text)
    snapshots = []

    for item in root:
        session_key = item.get("sessionKey")
        user_elem = item.find("User")
        if not session_key or user_elem is None or not user_elem.get("id"):
            continue

        player = item.find("Player")
        media = item.find("Media")
        session_elem = item.find("Session")
        transcode = item.find("TranscodeSession")

        state = player.get("state", "playing") if player is not None else "playing"
        if item.get("live") == "1":
            media_type = "live"
        else:
            media_type = PLEX_MEDIA_TYPES.get(item.get("type"), "unknown")

        if transcode is not None:
            video_decision = transcode.get("videoDecision") or "transcode"
            audio_decision = transcode.get("audioDecision")
        else:
            video_decision = "directplay"
            audio_decision = "directplay"

        bitrate = _int(session_elem.get("bandwidth")) if session_elem is not None else None
        if bitrate is None and media is not None:
            bitrate = _int(media.get("bitrate"))

        ip_address = None
        if player is not None:
            ip_address = player.get("remotePublicAddress") or player.get("address")

        snapshots.append(SessionSnapshot(
            session_key=session_key,
            rating_key=item.get("ratingKey"),
            external_user_id=user_elem.get("id"),
            username=user_elem.get("title") or user_elem.get("id"),
            user_thumb=user_elem.get("thumb"),
            state="paused" if state == "paused" else "playing",
            media_type=media_type,
            media_title=item.get("title"),
            grandparent_title=item.get("grandparentTitle"),
            season_number=_int(item.get("parentIndex")) if media_type == "episode" else None,
            episode_number=_int(item.get("index")) if media_type == "episode" else None,
            year=_int(item.get("year")),
            thumb_path=item.get("grandparentThumb") or item.get("thumb"),
            progress_ms=_int(item.get("viewOffset")),
            total_duration_ms=_int(item.get("duration")),
            ip_address=ip_address,
            player_name=player.get("title") if player is not None else None,
            device_id=player.get("machineIdentifier") if player is not None else None,
            product=player.get("product") if player is not None else None,
            device=player.get("device") if player is not None else None,
            platform=player.get("platform") if player is not None else None,
            quality=_format_resolution(media.get("videoResolution")) if media is not None else None,
            is_transcode=video_decision == "transcode",
            video_decision=video_decision,
            audio_decision=audio_decision,
            bitrate=bitrate,
        ))

    return snapshots


def parse_plex_history(xml_text: str) -> List[HistoryEntry]:
    root = ET.fromstring(xml_text)
    entries = []
    for item in root:
        rating_key = item.get("ratingKey")
        account_id = item.get("accountID")
        viewed_at = _int(item.get("viewedAt"))
        if not rating_key or not account_id or viewed_at is None:
            continue
        entries.append(HistoryEntry(
            rating_key=rating_key,
            external_user_id=account_id,
            viewed_at=datetime.fromtimestamp(viewed_at, tz=timezone.utc).replace(tzinfo=None),
            progress_ms=_int(item.get("viewOffset")),
            total_duration_ms=_int(item.get("duration")),
        ))
    return entries


class PlexProvider(BaseProvider):

    def __init__(self, server, credentials):
        super().__init__(server, credentials)
        self.token = self.credentials.get("api_key") or self.credentials.get("token")
        self.client_id = self.credentials.get("client_id") or settings.plex_client_id or "streamwarden"

    def _headers(self):
        return {
            "X-Plex-Token": self.token or "",
            "X-Plex-Client-Identifier": self.client_id,
            "Accept": "application/xml",
        }

    async def _get(self, path: str, params=None) -> str:
        if not self.token:
            raise SnapshotFetchError(self.server.id, "no Plex token configured")
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{self.base_url}{path}",
                    headers=self._headers(),
                    params=params,
                    timeout=self.timeout
                )
        except httpx.HTTPError as e:
            raise SnapshotFetchError(self.server.id, str(e)) from e

        logger.debug(f"Plex {path} response - Status: {response.status_code}")
        if response.status_code != 200:
            raise SnapshotFetchError(self.server.id, f"HTTP {response.status_code} from {path}")
        return response.text

    async def fetch_snapshot(self) -> List[SessionSnapshot]:
        """Get active Plex sessions"""
        text = await self._get("/status/sessions")
        if not text or not text.strip():
            return []
        try:
            return parse_plex_sessions(text)
        except ET.ParseError as e:
            raise SnapshotFetchError(self.server.id, f"invalid sessions XML: {e}") from e

    async def fetch_recent_history(self, since: datetime) -> List[HistoryEntry]:
        """Get Plex watch history newer than `since`"""
        epoch = int(since.replace(tzinfo=timezone.utc).timestamp())
        text = await self._get(
            "/status/sessions/history/all",
            params={"sort": "viewedAt:desc", "viewedAt>": epoch},
        )
        if not text or not text.strip():
            return []
        try:
            return parse_plex_history(text)
        except ET.ParseError as e:
            raise SnapshotFetchError(self.server.id, f"invalid history XML: {e}") from e
