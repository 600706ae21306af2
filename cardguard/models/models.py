"""
CardGuard — ORM Models (SQL card store backend)
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String,
)
from sqlalchemy.orm import relationship

from cardguard.services.db import Base


def _utcnow():
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Card  (one row per card number)
# ---------------------------------------------------------------------------
class Card(Base):
    __tablename__ = "cards"

    # insertion order for list_all
    id: int = Column(Integer, primary_key=True, autoincrement=True)
    card_number: str = Column(String(64), unique=True, nullable=False)
    status: str = Column(String(16), default="active", nullable=False)  # active | frozen | blocked
    reported: bool = Column(Boolean, default=False, nullable=False)
    last_seen_lat: float = Column(Float, nullable=True)
    last_seen_lon: float = Column(Float, nullable=True)
    last_seen_at: datetime = Column(DateTime(timezone=True), nullable=True)
    created_at: datetime = Column(DateTime(timezone=True), default=_utcnow)
    updated_at: datetime = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    events = relationship(
        "CardEventRow",
        back_populates="card",
        order_by="CardEventRow.seq.desc()",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


# ---------------------------------------------------------------------------
# CardEventRow  (append-only history, newest = highest seq)
# ---------------------------------------------------------------------------
class CardEventRow(Base):
    __tablename__ = "card_events"
    __table_args__ = (
        Index("ix_card_events_card_seq", "card_id", "seq"),
    )

    seq: int = Column(Integer, primary_key=True, autoincrement=True)
    event_id: str = Column(String(36), unique=True, nullable=False)
    card_id: int = Column(Integer, ForeignKey("cards.id", ondelete="CASCADE"), nullable=False)
    timestamp: datetime = Column(DateTime(timezone=True), nullable=False)
    lat: float = Column(Float, nullable=True)
    lon: float = Column(Float, nullable=True)
    risk: str = Column(String(16), nullable=True)     # LOW | MEDIUM | HIGH | FROZEN | BLOCKED
    action: str = Column(String(16), nullable=False)  # checked | continue | report | freeze | block

    card = relationship("Card", back_populates="events")
