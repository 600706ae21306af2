"""
CardGuard — Health-Check API
GET  /api/v1/health   →  { status, store, backend, uptime_seconds, version }

Used by container liveness / readiness probes.
"""

import logging
import time

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from cardguard.api.routes.cards import get_card_store
from cardguard.models.schemas import HealthCheck
from cardguard.services.observability import APP_VERSION
from cardguard.services.store import CardStore

logger = logging.getLogger("cardguard.api.health")
router = APIRouter()

# Record the time the process started (module-level, set once)
_PROCESS_START = time.perf_counter()


@router.get(
    "/",
    response_model=HealthCheck,
    summary="Health Check",
    description="Liveness / readiness probe.  Verifies the card store is readable.",
)
async def health_check(store: CardStore = Depends(get_card_store)):
    store_status = "healthy"

    # ── store ping ─────────────────────────────────────────────────────────
    try:
        await store.ping()
    except Exception as exc:
        store_status = "unhealthy"
        logger.error("Card store health-check failed: %s", exc)

    body = HealthCheck(
        status=store_status,
        store=store_status,
        backend=store.backend,
        uptime_seconds=round(time.perf_counter() - _PROCESS_START, 2),
        version=APP_VERSION,
    )

    # Return 503 if unhealthy so that orchestrators can detect it
    status_code = status.HTTP_200_OK if store_status == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(content=body.model_dump(), status_code=status_code)
