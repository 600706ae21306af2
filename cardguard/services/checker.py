"""
CardGuard — Check & Action Orchestrator

check_card      classify an observation against the card's prior state,
                then record the event and the new last-seen location.
perform_action  apply an operator remediation and record it.

Both run inside CardStore.update(), so the snapshot that was classified is
the snapshot that gets written back; no concurrent request can slip an
update in between.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from cardguard.models.schemas import CardEvent, CardRecord, LastSeen, Observation, utcnow
from cardguard.risk.actions import apply_action, validate_action
from cardguard.risk.classifier import RiskThresholds, classify
from cardguard.services.observability import log_action_applied, log_card_checked
from cardguard.services.security import mask_card_number
from cardguard.services.store import CardStore, push_history

logger = logging.getLogger("cardguard.checker")


def new_event_id() -> str:
    return str(uuid.uuid4())


@dataclass
class CheckResult:
    card: CardRecord
    risk: str
    details: Dict[str, Any]
    observation: Observation


@dataclass
class ActionResult:
    card: CardRecord
    action: str
    message: str
    performed_at: datetime


# ===========================================================================
# Check
# ===========================================================================
async def check_card(
    store: CardStore,
    card_number: str,
    observation: Observation,
    thresholds: Optional[RiskThresholds] = None,
) -> CheckResult:
    """
    1. Classify against the stored snapshot        → (risk, details)
    2. Prepend a ``checked`` event to history       (capped)
    3. Overwrite lastSeen with this observation     (even when unresolved)
    """
    start_time = time.perf_counter()

    def _check(record: CardRecord):
        risk, details = classify(record, observation, thresholds)
        event = CardEvent(
            id=new_event_id(),
            timestamp=observation.timestamp,
            lat=observation.lat,
            lon=observation.lon,
            risk=risk,
            action="checked",
        )
        record.history = push_history(record.history, event, store.history_limit)
        record.last_seen = LastSeen(
            lat=observation.lat,
            lon=observation.lon,
            timestamp=observation.timestamp,
        )
        return risk, details

    record, (risk, details) = await store.update(card_number, _check)

    log_card_checked(
        mask_card_number(card_number),
        risk,
        details,
        (time.perf_counter() - start_time) * 1000,
    )
    return CheckResult(card=record, risk=risk, details=details, observation=observation)


# ===========================================================================
# Action
# ===========================================================================
async def perform_action(
    store: CardStore,
    card_number: str,
    action: str,
    at: Optional[datetime] = None,
) -> ActionResult:
    """
    Apply *action* and prepend it to history.

    Unknown actions raise UnknownActionError before the store is touched.
    """
    validate_action(action)
    performed_at = at or utcnow()

    def _act(record: CardRecord) -> str:
        message = apply_action(record, action)
        event = CardEvent(id=new_event_id(), timestamp=performed_at, action=action)
        record.history = push_history(record.history, event, store.history_limit)
        return message

    record, message = await store.update(card_number, _act)

    log_action_applied(mask_card_number(card_number), action)
    return ActionResult(card=record, action=action, message=message, performed_at=performed_at)
