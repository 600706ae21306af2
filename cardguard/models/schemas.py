"""
CardGuard — Pydantic Schemas

Domain records (persisted by the card store) and request / response DTOs.
All models serialise with camelCase keys so the persisted document and the
HTTP surface share one layout.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

CardStatus = Literal["active", "frozen", "blocked"]
RiskLevel = Literal["LOW", "MEDIUM", "HIGH", "FROZEN", "BLOCKED"]
EventAction = Literal["checked", "continue", "report", "freeze", "block"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken to be UTC; aware ones are normalised to UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ===========================================================================
# Domain records
# ===========================================================================
class LastSeen(CamelModel):
    """Most recent observation accepted for a card."""
    lat: Optional[float] = None
    lon: Optional[float] = None
    timestamp: datetime

    normalize_timestamp = field_validator("timestamp")(_as_utc)


class Observation(CamelModel):
    """A resolved (location, time) pair. Coordinates may be unresolved."""
    lat: Optional[float] = None
    lon: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)

    normalize_timestamp = field_validator("timestamp")(_as_utc)

    @property
    def resolved(self) -> bool:
        return self.lat is not None and self.lon is not None


class CardEvent(CamelModel):
    """Immutable history entry for a check or an operator action."""
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    lat: Optional[float] = None
    lon: Optional[float] = None
    risk: Optional[RiskLevel] = None
    action: EventAction

    normalize_timestamp = field_validator("timestamp")(_as_utc)


class CardRecord(CamelModel):
    """Durable per-card state. Exactly one per card number."""
    card_number: str = Field(..., min_length=1)
    status: CardStatus = "active"
    reported: bool = False
    last_seen: Optional[LastSeen] = None
    history: List[CardEvent] = Field(default_factory=list)

    @classmethod
    def default(cls, card_number: str) -> "CardRecord":
        return cls(card_number=card_number)

    def to_document(self) -> Dict[str, Any]:
        """Persisted form: camelCase keys, ISO timestamps, empty fields omitted in events."""
        doc = self.model_dump(mode="json", by_alias=True, exclude={"history"})
        doc["history"] = [
            event.model_dump(mode="json", by_alias=True, exclude_none=True)
            for event in self.history
        ]
        return doc


# ===========================================================================
# API — requests
# ===========================================================================
class CheckRequest(CamelModel):
    """Inbound observation for a card."""
    card_number: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Card number (never echoed unmasked)",
    )
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lon: Optional[float] = Field(default=None, ge=-180, le=180)
    ts: Optional[datetime] = Field(
        default=None,
        description="Observation time; server clock when omitted",
    )

    @field_validator("card_number")
    @classmethod
    def card_number_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("cardNumber is required")
        return v


class ActionRequest(CamelModel):
    """Operator remediation request."""
    card_number: str = Field(..., min_length=1, max_length=64)
    action: str = Field(
        ...,
        min_length=1,
        description="continue | report | freeze | block",
    )

    @field_validator("card_number")
    @classmethod
    def card_number_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("cardNumber is required")
        return v


# ===========================================================================
# API — responses
# ===========================================================================
class CardSummary(CamelModel):
    card_number: str
    status: CardStatus
    reported: bool
    last_seen: Optional[LastSeen] = None


class CardDetail(CardSummary):
    history: List[CardEvent] = Field(default_factory=list)


class CheckResponse(CamelModel):
    card: CardSummary
    risk: RiskLevel
    details: Dict[str, Any]


class ActionCard(CamelModel):
    card_number: str
    status: CardStatus
    reported: bool


class ActionResponse(CamelModel):
    ok: bool = True
    message: str
    card: ActionCard


class HealthCheck(BaseModel):
    """Health check response."""
    status: str  # healthy | unhealthy
    store: str
    backend: str
    uptime_seconds: float
    version: str
