"""
Distance and safe-zone (geofence) evaluation.

Pure functions over caller-supplied state: nothing here touches storage,
the network or a clock other than the optional ``now`` default.
"""
import math
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

EARTH_RADIUS_M = 6371000.0

OUTCOME_EVALUATED = "evaluated"
OUTCOME_ZONE_INACTIVE = "zone_inactive"
OUTCOME_NO_ZONE = "no_zone_configured"

MAX_HYSTERESIS_FRACTION = 0.5


class InvalidCoordinate(ValueError):
    """Raised for non-finite or out-of-range latitude/longitude values."""


class Position(BaseModel):
    latitude: float
    longitude: float
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SafeZone(BaseModel):
    model_config = ConfigDict(extra="ignore")
    center_latitude: float
    center_longitude: float
    radius_meters: float = Field(gt=0)
    active: bool = True


class GeofenceState(BaseModel):
    relation_id: str
    is_outside: bool = False


class GeofenceBreach(BaseModel):
    relation_id: str
    distance_meters: float
    zone_center: dict
    position: dict
    radius_meters: float
    timestamp: datetime


class GeofenceEvaluation(BaseModel):
    state: GeofenceState
    breached: bool = False
    outcome: str = OUTCOME_EVALUATED
    distance_meters: Optional[float] = None
    breach: Optional[GeofenceBreach] = None


def validate_coordinate(latitude: float, longitude: float) -> None:
    for value in (latitude, longitude):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise InvalidCoordinate(f"Coordinate must be a finite number, got {value!r}")
    if not -90.0 <= latitude <= 90.0:
        raise InvalidCoordinate(f"Latitude {latitude} outside [-90, 90]")
    if not -180.0 <= longitude <= 180.0:
        raise InvalidCoordinate(f"Longitude {longitude} outside [-180, 180]")


def distance_meters(a_lat: float, a_lng: float, b_lat: float, b_lng: float) -> float:
    """Great-circle (haversine) distance in meters; rejects invalid input."""
    validate_coordinate(a_lat, a_lng)
    validate_coordinate(b_lat, b_lng)
    p1 = math.radians(a_lat)
    p2 = math.radians(b_lat)
    dlat = math.radians(b_lat - a_lat)
    dlon = math.radians(b_lng - a_lng)
    a = math.sin(dlat / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dlon / 2) ** 2
    # Rounding can push `a` a hair past 1 for antipodal points.
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def coerce_zone(zone: Any) -> Optional[SafeZone]:
    """Return a usable SafeZone or None when the zone is absent or malformed."""
    if zone is None:
        return None
    if isinstance(zone, SafeZone):
        parsed = zone
    else:
        try:
            parsed = SafeZone.model_validate(zone)
        except ValidationError:
            return None
    try:
        validate_coordinate(parsed.center_latitude, parsed.center_longitude)
    except InvalidCoordinate:
        return None
    if not math.isfinite(parsed.radius_meters):
        return None
    return parsed


def evaluate_geofence(
    position: Position,
    zone: Any,
    previous_state: GeofenceState,
    hysteresis_meters: float = 0.0,
    now: Optional[datetime] = None
) -> GeofenceEvaluation:
    """
    Compute inside/outside for one relationship and edge-trigger a breach.

    A breach fires only on the inside -> outside transition. With a non-zero
    hysteresis the exit threshold is ``radius + h`` and the re-entry threshold
    is ``radius - h``, with ``h`` capped at half the radius; the default of
    zero gives no dead-band at all.
    """
    parsed_zone = coerce_zone(zone)
    if parsed_zone is None:
        return GeofenceEvaluation(
            state=GeofenceState(relation_id=previous_state.relation_id, is_outside=False),
            outcome=OUTCOME_NO_ZONE
        )
    if not parsed_zone.active:
        return GeofenceEvaluation(
            state=GeofenceState(relation_id=previous_state.relation_id, is_outside=False),
            outcome=OUTCOME_ZONE_INACTIVE
        )

    distance = distance_meters(
        position.latitude,
        position.longitude,
        parsed_zone.center_latitude,
        parsed_zone.center_longitude
    )
    # Capped at half the radius so the re-entry threshold stays positive.
    band = min(max(0.0, float(hysteresis_meters or 0.0)), parsed_zone.radius_meters * MAX_HYSTERESIS_FRACTION)
    if previous_state.is_outside:
        is_outside = distance > parsed_zone.radius_meters - band
    else:
        is_outside = distance > parsed_zone.radius_meters + band

    breached = is_outside and not previous_state.is_outside
    breach = None
    if breached:
        breach = GeofenceBreach(
            relation_id=previous_state.relation_id,
            distance_meters=round(distance, 1),
            zone_center={
                "latitude": parsed_zone.center_latitude,
                "longitude": parsed_zone.center_longitude
            },
            position={"latitude": position.latitude, "longitude": position.longitude},
            radius_meters=parsed_zone.radius_meters,
            timestamp=now or datetime.now(timezone.utc)
        )

    return GeofenceEvaluation(
        state=GeofenceState(relation_id=previous_state.relation_id, is_outside=is_outside),
        breached=breached,
        distance_meters=distance,
        breach=breach
    )
