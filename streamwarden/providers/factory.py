import logging
from typing import Dict, Any
from cryptography.fernet import InvalidToken
from ..core.encryption import credential_encryption
from ..models.credential import Credential
from ..models.server import Server, ServerType
from .base import BaseProvider
from .plex import PlexProvider
from .emby import EmbyProvider
from .jellyfin import JellyfinProvider

logger = logging.getLogger(__name__)


class ProviderFactory:
    @staticmethod
    def get_server_credentials(server_id: int, db_session) -> Dict[str, Any]:
        """Decrypt the stored credentials for a server"""
        credentials_obj = db_session.query(Credential).filter(
            Credential.server_id == server_id
        ).first()

        if not credentials_obj or not credentials_obj.encrypted_payload:
            return {}
        try:
            return credential_encryption.decrypt_credentials(credentials_obj.encrypted_payload)
        except InvalidToken:
            logger.error(f"Failed to decrypt credentials for server {server_id}")
            return {}

    @staticmethod
    def create_provider(server: Server, db_session=None, credentials: Dict[str, Any] = None) -> BaseProvider:
        """Create a provider instance for the given server"""
        if credentials is None:
            credentials = ProviderFactory.get_server_credentials(server.id, db_session) if db_session else {}

        if server.type == ServerType.plex:
            return PlexProvider(server, credentials)
        elif server.type == ServerType.emby:
            return EmbyProvider(server, credentials)
        elif server.type == ServerType.jellyfin:
            return JellyfinProvider(server, credentials)
        else:
            raise ValueError(f"Unsupported server type: {server.type}")
