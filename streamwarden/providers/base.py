from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Dict, Any
from ..models.server import Server
from ..schemas.snapshot import SessionSnapshot, HistoryEntry


class BaseProvider(ABC):
    """
    Snapshot source for one media server.

    `fetch_snapshot` must raise SnapshotFetchError when the server cannot be
    read. An empty list means the server answered and nothing is playing.
    """

    def __init__(self, server: Server, credentials: Dict[str, Any]):
        self.server = server
        self.credentials = credentials or {}
        self.base_url = server.base_url.rstrip("/")
        self.timeout = 10.0

    @abstractmethod
    async def fetch_snapshot(self) -> List[SessionSnapshot]:
        """Get the sessions currently playing"""
        pass

    async def fetch_recent_history(self, since: datetime) -> List[HistoryEntry]:
        """Get watch history entries recorded by the server since `since`"""
        return []
