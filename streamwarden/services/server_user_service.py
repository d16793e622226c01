import logging
from typing import Dict, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from ..models.server_user import ServerUser
from ..schemas.snapshot import SessionSnapshot

logger = logging.getLogger(__name__)


class ServerUserService:
    def __init__(self, db: DBSession):
        self.db = db

    def _load(self, server_id: int, external_ids) -> Dict[str, ServerUser]:
        if not external_ids:
            return {}
        users = self.db.query(ServerUser).filter(
            ServerUser.server_id == server_id,
            ServerUser.external_id.in_(list(external_ids)),
        ).all()
        return {user.external_id: user for user in users}

    def resolve_for_snapshots(self, server_id: int, snapshots: Iterable[SessionSnapshot]) -> Dict[str, ServerUser]:
        """
        Map each snapshot's external user id to a ServerUser row, creating
        placeholder rows for accounts seen for the first time.
        """
        names: Dict[str, SessionSnapshot] = {}
        for snapshot in snapshots:
            names.setdefault(snapshot.external_user_id, snapshot)

        users = self._load(server_id, names.keys())
        missing = [external_id for external_id in names if external_id not in users]
        if not missing:
            return users

        for external_id in missing:
            snapshot = names[external_id]
            self.db.add(ServerUser(
                server_id=server_id,
                external_id=external_id,
                username=snapshot.username or external_id,
                thumb_url=snapshot.user_thumb,
            ))

        try:
            self.db.commit()
            logger.info(f"Created {len(missing)} server users for server {server_id}")
        except IntegrityError:
            # Another worker created them first
            self.db.rollback()
            logger.debug(f"Server users for server {server_id} created concurrently, reloading")

        return self._load(server_id, names.keys())
