"""
CardGuard — Impossible-Travel Risk Classifier

Compares an observation against the card's last known location and time.
Pure: takes a snapshot of prior state and returns (risk_level, details);
persisting the outcome is the caller's job.

Ordered thresholds (first match wins):
    distance > 500 km  AND  elapsed < 6 h   → HIGH
    distance > 100 km  AND  elapsed < 24 h  → MEDIUM
    otherwise                               → LOW

A frozen / blocked card overrides the computed level, but the distance
breakdown is still reported.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from cardguard.config import settings
from cardguard.models.schemas import CardRecord, Observation

logger = logging.getLogger("cardguard.risk")

NO_PRIOR_LOCATION_NOTE = "No previous location for this card (first time or missing)."

STATUS_OVERRIDES: Dict[str, str] = {
    "blocked": "BLOCKED",
    "frozen": "FROZEN",
}


@dataclass(frozen=True)
class RiskThresholds:
    high_distance_km: float = 500.0
    high_hours: float = 6.0
    medium_distance_km: float = 100.0
    medium_hours: float = 24.0
    earth_radius_km: float = 6371.0

    @classmethod
    def from_settings(cls) -> "RiskThresholds":
        return cls(
            high_distance_km=settings.HIGH_RISK_DISTANCE_KM,
            high_hours=settings.HIGH_RISK_HOURS,
            medium_distance_km=settings.MEDIUM_RISK_DISTANCE_KM,
            medium_hours=settings.MEDIUM_RISK_HOURS,
            earth_radius_km=settings.EARTH_RADIUS_KM,
        )


# ===========================================================================
# Geometry
# ===========================================================================
def haversine_km(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
    radius_km: float = 6371.0,
) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Rounding can push a a hair above 1 for antipodal points
    a = min(1.0, max(0.0, a))
    return 2 * radius_km * math.asin(math.sqrt(a))


# ===========================================================================
# Level classifier
# ===========================================================================
def _level_for(distance_km: float, hours: float, thresholds: RiskThresholds) -> str:
    if distance_km > thresholds.high_distance_km and hours < thresholds.high_hours:
        return "HIGH"
    if distance_km > thresholds.medium_distance_km and hours < thresholds.medium_hours:
        return "MEDIUM"
    return "LOW"


def classify(
    prior: CardRecord,
    observation: Observation,
    thresholds: Optional[RiskThresholds] = None,
) -> Tuple[str, Dict[str, Any]]:
    """
    Classify *observation* against the *prior* card snapshot.

    Returns
    -------
    risk_level : str   – LOW | MEDIUM | HIGH | FROZEN | BLOCKED
    details    : dict  – distance_km / hours_since_last, or a note when
                         there is no comparable prior location
    """
    thresholds = thresholds or RiskThresholds.from_settings()
    last = prior.last_seen
    details: Dict[str, Any] = {}

    comparable = (
        last is not None
        and last.lat is not None
        and last.lon is not None
        and observation.resolved
    )

    if comparable:
        distance_km = haversine_km(
            last.lat, last.lon, observation.lat, observation.lon,
            radius_km=thresholds.earth_radius_km,
        )
        # Absolute difference: out-of-order timestamps are not rejected
        hours = abs((observation.timestamp - last.timestamp).total_seconds()) / 3600.0

        details["distance_km"] = round(distance_km, 2)
        details["hours_since_last"] = round(hours, 2)
        risk = _level_for(distance_km, hours, thresholds)
    else:
        details["note"] = NO_PRIOR_LOCATION_NOTE
        risk = "LOW"

    override = STATUS_OVERRIDES.get(prior.status)
    if override:
        logger.debug("Status override %s → %s (computed %s)", prior.status, override, risk)
        risk = override

    return risk, details
