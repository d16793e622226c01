"""
Typed rule definitions.

Rule rows keep their params as JSON. They are parsed into one params model per
rule type when loaded, so evaluation never sees malformed params.
"""
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, TypeAdapter, ValidationError
from typing import Annotated, List, Literal, Optional, Union

from ..core.exceptions import RuleConfigurationError


class _RuleParams(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class ImpossibleTravelParams(_RuleParams):
    type: Literal["impossible_travel"] = "impossible_travel"
    max_speed_kmh: float = Field(gt=0, validation_alias=AliasChoices("max_speed_kmh", "maxSpeedKmh"))


class SimultaneousLocationsParams(_RuleParams):
    type: Literal["simultaneous_locations"] = "simultaneous_locations"
    min_distance_km: float = Field(ge=0, validation_alias=AliasChoices("min_distance_km", "minDistanceKm"))


class DeviceVelocityParams(_RuleParams):
    type: Literal["device_velocity"] = "device_velocity"
    max_ips: int = Field(ge=1, validation_alias=AliasChoices("max_ips", "maxIps"))
    window_hours: float = Field(gt=0, validation_alias=AliasChoices("window_hours", "windowHours"))


class ConcurrentStreamsParams(_RuleParams):
    type: Literal["concurrent_streams"] = "concurrent_streams"
    max_streams: int = Field(ge=1, validation_alias=AliasChoices("max_streams", "maxStreams"))


class GeoRestrictionParams(_RuleParams):
    type: Literal["geo_restriction"] = "geo_restriction"
    blocked_countries: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("blocked_countries", "blockedCountries"),
    )


RuleParams = Annotated[
    Union[
        ImpossibleTravelParams,
        SimultaneousLocationsParams,
        DeviceVelocityParams,
        ConcurrentStreamsParams,
        GeoRestrictionParams,
    ],
    Field(discriminator="type"),
]

_params_adapter = TypeAdapter(RuleParams)

# Rules whose violations involve several sessions at once
MULTI_SESSION_RULE_TYPES = frozenset({"concurrent_streams", "simultaneous_locations"})


class RuleDefinition(BaseModel):
    """An active rule with validated params"""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    type: str
    server_user_id: Optional[int] = None
    params: RuleParams


def parse_rule_params(rule_id: int, rule_type: str, params: Optional[dict]) -> RuleParams:
    """Validate raw JSON params for a rule type, raising RuleConfigurationError when they don't fit"""
    payload = dict(params or {})
    payload["type"] = rule_type
    try:
        return _params_adapter.validate_python(payload)
    except ValidationError as e:
        raise RuleConfigurationError(rule_id, str(e))


def load_rule_definition(rule) -> RuleDefinition:
    """Build a RuleDefinition from a Rule row"""
    return RuleDefinition(
        id=rule.id,
        name=rule.name,
        type=rule.type,
        server_user_id=rule.server_user_id,
        params=parse_rule_params(rule.id, rule.type, rule.params),
    )
