from .base import BaseProvider
from .plex import PlexProvider
from .emby import EmbyProvider
from .jellyfin import JellyfinProvider
from .factory import ProviderFactory

__all__ = [
    "BaseProvider",
    "PlexProvider",
    "EmbyProvider",
    "JellyfinProvider",
    "ProviderFactory"
]
