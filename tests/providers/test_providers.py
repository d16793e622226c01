"""
Tests for vendor snapshot parsing and provider error handling
"""
import httpx
import pytest
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from streamwarden.core.encryption import credential_encryption
from streamwarden.core.exceptions import SnapshotFetchError
from streamwarden.models import Credential, ServerType
from streamwarden.providers.emby import EmbyProvider
from streamwarden.providers.factory import ProviderFactory
from streamwarden.providers.jellyfin import JellyfinProvider
from streamwarden.providers.mediabrowser import parse_mediabrowser_sessions
from streamwarden.providers.plex import PlexProvider, parse_plex_history, parse_plex_sessions

PLEX_SESSIONS = """
<MediaContainer size="2">
  <Video sessionKey="41" ratingKey="5531" type="episode" title="Pilot" grandparentTitle="Halt and Catch Fire"
         parentIndex="1" index="1" year="2014" viewOffset="1200000" duration="2700000">
    <Media videoResolution="1080" bitrate="9000"/>
    <User id="12" title="alice" thumb="https://plex.tv/users/12/avatar"/>
    <Player title="Living Room TV" state="paused" address="192.168.1.20" remotePublicAddress="203.0.113.7"
            machineIdentifier="abc" product="Plex for Android" platform="Android" device="SHIELD"/>
    <Session id="s1" bandwidth="4200"/>
    <TranscodeSession videoDecision="transcode" audioDecision="copy"/>
  </Video>
  <Video sessionKey="42" ratingKey="7000" type="movie" title="Idle">
    <Player title="Phone" state="playing"/>
  </Video>
</MediaContainer>
"""

PLEX_HISTORY = """<MediaContainer>
  <Video ratingKey="5531" accountID="12" viewedAt="1717272000" viewOffset="2500000" duration="2700000"/>
  <Video ratingKey="5532" viewedAt="1717272000"/>
</MediaContainer>
"""

JELLYFIN_SESSIONS = [
    {
        "Id": "js-1",
        "UserId": "user-a",
        "UserName": "bob",
        "RemoteEndPoint": "198.51.100.4",
        "DeviceName": "Bedroom",
        "DeviceId": "dev-1",
        "Client": "Jellyfin Web",
        "LastPausedDate": "2024-06-01T19:58:30.1234567Z",
        "PlayState": {"PositionTicks": 6000000000, "IsPaused": True, "PlayMethod": "Transcode"},
        "TranscodingInfo": {"Bitrate": 3500000, "IsVideoDirect": False, "IsAudioDirect": True},
        "NowPlayingItem": {
            "Id": "item-9",
            "Name": "The Rescue",
            "Type": "Episode",
            "SeriesName": "The Mandalorian",
            "ParentIndexNumber": 1,
            "IndexNumber": 8,
            "RunTimeTicks": 30000000000,
            "MediaStreams": [{"Type": "Audio"}, {"Type": "Video", "Height": 2160}],
        },
    },
    {"Id": "js-2", "UserId": "user-b", "DeviceName": "Idle tablet"},
]


def fake_server(server_type=ServerType.plex):
    return SimpleNamespace(id=1, name="media", type=server_type, base_url="http://media.local:8096/")


class TestPlexParsing:
    """Test cases for Plex XML parsing"""

    def test_parse_sessions(self):
        snapshots = parse_plex_sessions(PLEX_SESSIONS)

        assert len(snapshots) == 1
        snapshot = snapshots[0]
        assert snapshot.session_key == "41"
        assert snapshot.external_user_id == "12"
        assert snapshot.state == "paused"
        assert snapshot.media_type == "episode"
        assert (snapshot.season_number, snapshot.episode_number) == (1, 1)
        assert snapshot.progress_ms == 1200000
        assert snapshot.ip_address == "203.0.113.7"
        assert snapshot.quality == "1080p"
        assert snapshot.is_transcode is True
        assert snapshot.audio_decision == "copy"
        assert snapshot.bitrate == 4200

    def test_live_tv(self):
        xml = """<MediaContainer><Video sessionKey="1" live="1" type="episode"><User id="3"/></Video></MediaContainer>"""

        assert parse_plex_sessions(xml)[0].media_type == "live"

    def test_parse_history(self):
        entries = parse_plex_history(PLEX_HISTORY)

        assert len(entries) == 1
        assert entries[0].external_user_id == "12"
        assert entries[0].viewed_at == datetime(2024, 6, 1, 20, 0, 0)
        assert entries[0].progress_ms == 2500000


class TestMediaBrowserParsing:
    """Test cases for Jellyfin/Emby session parsing"""

    def test_parse_sessions(self):
        snapshots = parse_mediabrowser_sessions(JELLYFIN_SESSIONS)

        assert len(snapshots) == 1
        snapshot = snapshots[0]
        assert snapshot.session_key == "js-1"
        assert snapshot.rating_key == "item-9"
        assert snapshot.state == "paused"
        assert snapshot.progress_ms == 600000
        assert snapshot.total_duration_ms == 3000000
        assert snapshot.last_paused_at == datetime(2024, 6, 1, 19, 58, 30, 123456)
        assert snapshot.quality == "4K"
        assert snapshot.video_decision == "transcode"
        assert snapshot.audio_decision == "copy"
        assert snapshot.bitrate == 3500

    def test_direct_play(self):
        session = dict(JELLYFIN_SESSIONS[0], PlayState={"PositionTicks": 0, "IsPaused": False, "PlayMethod": "DirectPlay"})

        snapshot = parse_mediabrowser_sessions([session])[0]

        assert snapshot.is_transcode is False
        assert snapshot.last_paused_at is None
        assert snapshot.state == "playing"


class TestProviderErrors:
    """Test cases for fetch failures surfacing as SnapshotFetchError"""

    @pytest.mark.asyncio
    async def test_missing_token(self):
        with pytest.raises(SnapshotFetchError):
            await PlexProvider(fake_server(), {}).fetch_snapshot()

    @pytest.mark.asyncio
    async def test_connection_error(self, monkeypatch):
        monkeypatch.setattr(httpx.AsyncClient, "get", AsyncMock(side_effect=httpx.ConnectError("refused")))

        with pytest.raises(SnapshotFetchError):
            await JellyfinProvider(fake_server(ServerType.jellyfin), {"api_key": "k"}).fetch_snapshot()

    @pytest.mark.asyncio
    async def test_non_200(self, monkeypatch):
        monkeypatch.setattr(httpx.AsyncClient, "get", AsyncMock(return_value=MagicMock(status_code=401)))

        with pytest.raises(SnapshotFetchError, match="HTTP 401"):
            await EmbyProvider(fake_server(ServerType.emby), {"api_key": "k"}).fetch_snapshot()

    @pytest.mark.asyncio
    async def test_empty_response_means_nothing_playing(self, monkeypatch):
        monkeypatch.setattr(httpx.AsyncClient, "get", AsyncMock(return_value=MagicMock(status_code=200, text="")))

        assert await PlexProvider(fake_server(), {"token": "t"}).fetch_snapshot() == []


class TestProviderFactory:
    """Test cases for ProviderFactory"""

    def test_provider_per_type(self):
        assert isinstance(ProviderFactory.create_provider(fake_server(ServerType.plex), credentials={}), PlexProvider)
        assert isinstance(ProviderFactory.create_provider(fake_server(ServerType.emby), credentials={}), EmbyProvider)
        assert isinstance(ProviderFactory.create_provider(fake_server(ServerType.jellyfin), credentials={}), JellyfinProvider)

    def test_credentials_decrypted(self, db, server):
        """Test stored credentials reach the provider decrypted"""
        db.add(Credential(
            server_id=server.id,
            encrypted_payload=credential_encryption.encrypt_credentials({"token": "secret"}),
            auth_type="token",
        ))
        db.commit()

        provider = ProviderFactory.create_provider(server, db)

        assert provider.token == "secret"
