"""
CardGuard — Cards API

POST /api/v1/check                 → classify an observation for a card
POST /api/v1/action                → report / freeze / block / continue
GET  /api/v1/cards                 → every known card (masked)
GET  /api/v1/cards/{card_number}   → one card with history (masked)
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Request, status

from cardguard.models.schemas import (
    ActionCard,
    ActionRequest,
    ActionResponse,
    CardDetail,
    CardRecord,
    CardSummary,
    CheckRequest,
    CheckResponse,
    Observation,
    utcnow,
)
from cardguard.services import geolocation
from cardguard.services.alerting import Alert, action_alert, dispatch_alert, high_risk_alert
from cardguard.services.checker import check_card, perform_action
from cardguard.services.errors import CardNotFoundError
from cardguard.services.security import mask_card_number, require_operator
from cardguard.services.store import CardStore

logger = logging.getLogger("cardguard.api.cards")
router = APIRouter()


def get_card_store(request: Request) -> CardStore:
    """The store built at startup (tests swap in their own)."""
    return request.app.state.card_store


def _summary(record: CardRecord) -> CardSummary:
    return CardSummary(
        card_number=mask_card_number(record.card_number),
        status=record.status,
        reported=record.reported,
        last_seen=record.last_seen,
    )


async def _notify(alert: Alert) -> None:
    # Notification failures never fail the request
    try:
        await dispatch_alert(alert)
    except Exception as exc:
        logger.warning("Failed to dispatch %s alert: %s", alert.kind, exc)


# ===========================================================================
# POST  /api/v1/check
# ===========================================================================
@router.post(
    "/check",
    response_model=CheckResponse,
    summary="Check Card Usage",
    description=(
        "Classifies an observation against the card's last known location "
        "and time, records it in the card's history and returns the risk level. "
        "Missing coordinates fall back to IP geolocation when enabled."
    ),
)
async def check(
    payload: CheckRequest,
    store: CardStore = Depends(get_card_store),
):
    lat, lon = await geolocation.resolve_coordinates(payload.lat, payload.lon)
    observation = Observation(lat=lat, lon=lon, timestamp=payload.ts or utcnow())

    result = await check_card(store, payload.card_number, observation)
    masked = mask_card_number(payload.card_number)

    if result.risk == "HIGH":
        await _notify(high_risk_alert(masked, observation.timestamp, result.details))

    return CheckResponse(
        card=_summary(result.card),
        risk=result.risk,
        details=result.details,
    )


# ===========================================================================
# POST  /api/v1/action
# ===========================================================================
@router.post(
    "/action",
    response_model=ActionResponse,
    summary="Apply Operator Action",
    description="continue | report | freeze | block.  Unknown actions are rejected with no state change.",
)
async def action(
    payload: ActionRequest,
    store: CardStore = Depends(get_card_store),
    operator: Dict[str, Any] = Depends(require_operator),
):
    result = await perform_action(store, payload.card_number, payload.action)
    masked = mask_card_number(payload.card_number)

    logger.info("Operator %s applied %s to %s", operator.get("sub"), result.action, masked)
    await _notify(action_alert(masked, result.action, result.performed_at))

    return ActionResponse(
        ok=True,
        message=result.message,
        card=ActionCard(
            card_number=masked,
            status=result.card.status,
            reported=result.card.reported,
        ),
    )


# ===========================================================================
# GET  /api/v1/cards
# ===========================================================================
@router.get(
    "/cards",
    response_model=List[CardDetail],
    summary="List Cards",
)
async def list_cards(
    store: CardStore = Depends(get_card_store),
    operator: Dict[str, Any] = Depends(require_operator),
):
    return [
        CardDetail(**_summary(record).model_dump(), history=record.history)
        for record in await store.list_all()
    ]


# ===========================================================================
# GET  /api/v1/cards/{card_number}
# ===========================================================================
@router.get(
    "/cards/{card_number}",
    response_model=CardDetail,
    status_code=status.HTTP_200_OK,
    summary="Get Card",
)
async def get_card(
    card_number: str,
    store: CardStore = Depends(get_card_store),
    operator: Dict[str, Any] = Depends(require_operator),
):
    record = await store.get(card_number)
    if record is None:
        raise CardNotFoundError(mask_card_number(card_number))
    return CardDetail(**_summary(record).model_dump(), history=record.history)
