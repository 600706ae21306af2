"""
CardGuard — IP Geolocation Fallback

Used when a check arrives without coordinates.  Best effort only: any
failure leaves the observation unresolved and the check carries on.

NOTE: called from the server this resolves the *server's* public IP on most
hosts.  Client-side geolocation is preferred whenever the caller has it.
"""

import logging
from typing import Optional, Tuple

import httpx

from cardguard.config import settings
from cardguard.services.observability import Metrics

logger = logging.getLogger("cardguard.geolocation")

Coordinates = Tuple[Optional[float], Optional[float]]


def _coerce(value) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


async def lookup_location(
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Coordinates:
    """
    Query the configured lookup service.

    Returns
    -------
    (lat, lon) : both floats, or (None, None) when unresolved
    """
    if not settings.GEOLOOKUP_ENABLED:
        return None, None

    try:
        async with httpx.AsyncClient(
            timeout=settings.GEOLOOKUP_TIMEOUT_SECONDS,
            transport=transport,
        ) as client:
            resp = await client.get(settings.GEOLOOKUP_URL)
            resp.raise_for_status()
            data = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Geolocation fallback failed: %s", exc)
        Metrics.geolookups_total.labels(outcome="failed").inc()
        return None, None

    lat = _coerce(data.get("latitude")) if isinstance(data, dict) else None
    lon = _coerce(data.get("longitude")) if isinstance(data, dict) else None
    if lat is None or lon is None:
        logger.info("Geolocation fallback returned no coordinates")
        Metrics.geolookups_total.labels(outcome="unresolved").inc()
        return None, None

    Metrics.geolookups_total.labels(outcome="resolved").inc()
    return lat, lon


async def resolve_coordinates(
    lat: Optional[float],
    lon: Optional[float],
) -> Coordinates:
    """Caller-supplied coordinates win; the lookup only fills a missing pair."""
    if lat is not None and lon is not None:
        return lat, lon
    found_lat, found_lon = await lookup_location()
    if found_lat is None:
        return lat, lon
    return found_lat, found_lon
