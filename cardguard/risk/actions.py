"""
CardGuard — Operator Action State Machine

    continue → no change (advisory, still logged to history)
    report   → reported = True   (sticky)
    freeze   → status = frozen
    block    → status = blocked

No transition ever returns a card to active.
"""

from typing import Callable, Dict

from cardguard.models.schemas import CardRecord
from cardguard.services.errors import UnknownActionError


def _continue(card: CardRecord) -> None:
    pass


def _report(card: CardRecord) -> None:
    card.reported = True


def _freeze(card: CardRecord) -> None:
    card.status = "frozen"


def _block(card: CardRecord) -> None:
    card.status = "blocked"


# action → (transition, operator-facing message)
TRANSITIONS: Dict[str, tuple[Callable[[CardRecord], None], str]] = {
    "continue": (_continue, "Transaction allowed (no action taken)."),
    "report":   (_report,   "Card reported."),
    "freeze":   (_freeze,   "Card frozen."),
    "block":    (_block,    "Card blocked."),
}

VALID_ACTIONS = frozenset(TRANSITIONS)


def validate_action(action: str) -> str:
    """Raise UnknownActionError unless *action* is recognised."""
    if action not in TRANSITIONS:
        raise UnknownActionError(action)
    return action


def apply_action(card: CardRecord, action: str) -> str:
    """Apply *action* to *card* in place and return the operator message."""
    transition, message = TRANSITIONS[validate_action(action)]
    transition(card)
    return message
