import httpx
import logging
from typing import List
from .base import BaseProvider
from .mediabrowser import parse_mediabrowser_sessions
from ..core.exceptions import SnapshotFetchError
from ..schemas.snapshot import SessionSnapshot

logger = logging.getLogger(__name__)


class JellyfinProvider(BaseProvider):

    def __init__(self, server, credentials):
        super().__init__(server, credentials)
        self.api_key = self.credentials.get("api_key") or self.credentials.get("token")

    async def fetch_snapshot(self) -> List[SessionSnapshot]:
        """Get active Jellyfin sessions"""
        if not self.api_key:
            raise SnapshotFetchError(self.server.id, "no Jellyfin API key configured")

        try:
            async with httpx.AsyncClient(verify=False) as client:
                response = await client.get(
                    f"{self.base_url}/Sessions",
                    params={"ActiveWithinSeconds": 960},
                    headers={"Authorization": f'MediaBrowser Token="{self.api_key}"'},
                    timeout=self.timeout
                )
        except httpx.HTTPError as e:
            raise SnapshotFetchError(self.server.id, str(e)) from e

        logger.debug(f"Jellyfin sessions response - Status: {response.status_code}")
        if response.status_code != 200:
            raise SnapshotFetchError(self.server.id, f"HTTP {response.status_code} from /Sessions")

        try:
            return parse_mediabrowser_sessions(response.json())
        except ValueError as e:
            raise SnapshotFetchError(self.server.id, f"invalid sessions JSON: {e}") from e
