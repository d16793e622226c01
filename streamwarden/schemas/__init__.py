from .snapshot import *
from .rule import *
from .session import *
from .events import *

__all__ = [
    # Snapshot schemas
    "SessionSnapshot",
    "HistoryEntry",

    # Rule schemas
    "ImpossibleTravelParams",
    "SimultaneousLocationsParams",
    "DeviceVelocityParams",
    "ConcurrentStreamsParams",
    "GeoRestrictionParams",
    "RuleParams",
    "RuleDefinition",
    "MULTI_SESSION_RULE_TYPES",
    "parse_rule_params",
    "load_rule_definition",

    # Session schemas
    "SessionResponse",
    "ViolationResponse",
    "PollerStatusResponse",

    # Event schemas
    "PushEvent",
]
