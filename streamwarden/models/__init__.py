from ..core.database import Base
from .server import Server, ServerType
from .credential import Credential
from .server_user import ServerUser
from .session import Session
from .rule import Rule
from .violation import Violation

__all__ = [
    "Base",
    "Server",
    "ServerType",
    "Credential",
    "ServerUser",
    "Session",
    "Rule",
    "Violation"
]
