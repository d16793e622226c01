"""
Rule evaluation against a session and the user's recent history
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Sequence

from ..core.constants import SEVERITY_PENALTIES
from ..schemas.rule import (
    ConcurrentStreamsParams,
    DeviceVelocityParams,
    GeoRestrictionParams,
    ImpossibleTravelParams,
    RuleDefinition,
    SimultaneousLocationsParams,
)

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


@dataclass
class RuleEvaluationResult:
    violated: bool
    severity: str = "low"
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def related_session_ids(self) -> List[int]:
        return list(self.data.get("related_session_ids", []))


NOT_VIOLATED = RuleEvaluationResult(violated=False)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres"""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def penalty_for_severity(severity: str) -> int:
    return SEVERITY_PENALTIES.get(severity, 0)


def does_rule_apply_to_user(rule, server_user_id: int) -> bool:
    """A rule without a user applies to everyone; otherwise only to that user"""
    return rule.server_user_id is None or rule.server_user_id == server_user_id


def _has_location(session) -> bool:
    return session.geo_lat is not None and session.geo_lon is not None


class RuleEngine:
    """Stateless evaluator; one method per rule type"""

    def evaluate_rule(self, rule: RuleDefinition, session, history: Sequence) -> RuleEvaluationResult:
        # The session under evaluation is never part of its own history
        others = [
            s for s in history
            if s.server_user_id == session.server_user_id and s.id != session.id
        ]
        params = rule.params

        if isinstance(params, ImpossibleTravelParams):
            return self._check_impossible_travel(session, others, params)
        if isinstance(params, SimultaneousLocationsParams):
            return self._check_simultaneous_locations(session, others, params)
        if isinstance(params, DeviceVelocityParams):
            return self._check_device_velocity(session, others, params)
        if isinstance(params, ConcurrentStreamsParams):
            return self._check_concurrent_streams(session, others, params)
        if isinstance(params, GeoRestrictionParams):
            return self._check_geo_restriction(session, params)

        logger.warning(f"No evaluator for rule {rule.id} of type {rule.type}")
        return NOT_VIOLATED

    def get_trust_score_penalty(self, rule: RuleDefinition, session, history: Sequence) -> int:
        """Penalty the rule would apply to this session, 0 when it does not trigger"""
        result = self.evaluate_rule(rule, session, history)
        if not result.violated:
            return 0
        return penalty_for_severity(result.severity)

    def _check_impossible_travel(self, session, history, params: ImpossibleTravelParams) -> RuleEvaluationResult:
        if not _has_location(session):
            return NOT_VIOLATED

        for previous in history:
            if not _has_location(previous):
                continue

            distance = haversine_km(previous.geo_lat, previous.geo_lon, session.geo_lat, session.geo_lon)
            hours = (session.started_at - previous.started_at).total_seconds() / 3600
            if hours <= 0:
                continue

            speed = distance / hours
            if speed > params.max_speed_kmh:
                return RuleEvaluationResult(
                    violated=True,
                    severity="high",
                    data={
                        "previous_location": {"lat": previous.geo_lat, "lon": previous.geo_lon},
                        "current_location": {"lat": session.geo_lat, "lon": session.geo_lon},
                        "distance_km": distance,
                        "time_diff_hours": hours,
                        "calculated_speed_kmh": speed,
                        "max_allowed_speed_kmh": params.max_speed_kmh,
                        "related_session_ids": [previous.id],
                    },
                )

        return NOT_VIOLATED

    def _check_simultaneous_locations(self, session, history, params: SimultaneousLocationsParams) -> RuleEvaluationResult:
        if not _has_location(session):
            return NOT_VIOLATED

        for active in history:
            if active.state != "playing" or not _has_location(active):
                continue

            distance = haversine_km(active.geo_lat, active.geo_lon, session.geo_lat, session.geo_lon)
            if distance > params.min_distance_km:
                return RuleEvaluationResult(
                    violated=True,
                    severity="warning",
                    data={
                        "locations": [
                            {"lat": active.geo_lat, "lon": active.geo_lon},
                            {"lat": session.geo_lat, "lon": session.geo_lon},
                        ],
                        "distance_km": distance,
                        "min_required_distance_km": params.min_distance_km,
                        "related_session_ids": [active.id],
                    },
                )

        return NOT_VIOLATED

    def _check_device_velocity(self, session, history, params: DeviceVelocityParams) -> RuleEvaluationResult:
        window_start = session.started_at - timedelta(hours=params.window_hours)
        in_window = [s for s in history if s.started_at >= window_start]

        unique_ips = {s.ip_address for s in in_window}
        unique_ips.add(session.ip_address)

        if len(unique_ips) > params.max_ips:
            return RuleEvaluationResult(
                violated=True,
                severity="warning",
                data={
                    "unique_ip_count": len(unique_ips),
                    "max_allowed_ips": params.max_ips,
                    "window_hours": params.window_hours,
                    "ips": sorted(ip for ip in unique_ips if ip is not None),
                },
            )

        return NOT_VIOLATED

    def _check_concurrent_streams(self, session, history, params: ConcurrentStreamsParams) -> RuleEvaluationResult:
        active = [s for s in history if s.state == "playing"]
        total_streams = len(active) + 1

        if total_streams > params.max_streams:
            return RuleEvaluationResult(
                violated=True,
                severity="low",
                data={
                    "active_stream_count": total_streams,
                    "max_allowed_streams": params.max_streams,
                    "related_session_ids": [s.id for s in active],
                },
            )

        return NOT_VIOLATED

    def _check_geo_restriction(self, session, params: GeoRestrictionParams) -> RuleEvaluationResult:
        if session.geo_country and session.geo_country in params.blocked_countries:
            return RuleEvaluationResult(
                violated=True,
                severity="high",
                data={
                    "country": session.geo_country,
                    "blocked_countries": list(params.blocked_countries),
                },
            )

        return NOT_VIOLATED


# Global instance
rule_engine = RuleEngine()
