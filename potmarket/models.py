"""Database models for the points pot market.

This module defines the SQLAlchemy ORM models: ``User``, ``Event``,
``Participant``, ``EventOutcome``, ``PlatformFee`` and ``PointsHistory``.
Relationships are declared to simplify joining users with their stakes and
events with their participants.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from potmarket.config import settings
from potmarket.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value):
    """Return ``value`` as an aware UTC datetime (SQLite hands back naive ones)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EventStatus(str, enum.Enum):
    OPEN = "OPEN"
    LOCKED = "LOCKED"
    # Only visible inside the settlement transaction that set it.
    RESOLVING = "RESOLVING"
    RESOLVED = "RESOLVED"
    CANCELED = "CANCELED"


class OutcomeResult(str, enum.Enum):
    WIN = "win"
    LOSS = "loss"
    VOID = "void"


class User(Base):
    """A registered player.

    ``points`` is the spendable balance. It is only changed through the
    points ledger so every change has a matching ``PointsHistory`` row.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    points = Column(Integer, default=settings.initial_points, nullable=False, index=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    is_suspended = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    participations = relationship("Participant", back_populates="user")
    history = relationship("PointsHistory", back_populates="user", order_by="PointsHistory.id")


class Event(Base):
    """A timed question users stake points on.

    ``status`` is the single source of truth for the lifecycle. The legacy
    ``resolution_status`` value is derived from it for older clients.
    """

    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint(
            "status IN ('OPEN', 'LOCKED', 'RESOLVING', 'RESOLVED', 'CANCELED')",
            name="ck_events_status",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True)

    start_time = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String(16), default=EventStatus.OPEN.value, nullable=False, index=True)

    options = Column(JSON, default=list, nullable=False)  # [{id, label, value}, ...]
    correct_answer = Column(String, nullable=True)
    final_price = Column(Numeric(18, 8), nullable=True)

    # Events without a pot take predictions but no point stakes.
    pot_enabled = Column(Boolean, default=True, nullable=False)
    min_bet = Column(Integer, default=settings.default_min_bet, nullable=False)
    max_bet = Column(Integer, default=settings.default_max_bet, nullable=False)
    fee_rate = Column(Numeric(5, 4), default=settings.platform_fee_rate, nullable=False)
    platform_fee = Column(Integer, default=0, nullable=False)
    prize_pool = Column(Integer, default=0, nullable=False)
    total_bets = Column(Integer, default=0, nullable=False)

    needs_review = Column(Boolean, default=False, nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    participants = relationship("Participant", back_populates="event", order_by="Participant.id")

    @property
    def resolution_status(self) -> str:
        return "resolved" if self.status == EventStatus.RESOLVED.value else "pending"

    def option_values(self):
        return [opt.get("value") for opt in (self.options or [])]


class Participant(Base):
    """One user's stake on one event."""

    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_participants_event_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    prediction = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    settled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    event = relationship("Event", back_populates="participants")
    user = relationship("User", back_populates="participations")
    outcome = relationship("EventOutcome", back_populates="participant", uselist=False)


class EventOutcome(Base):
    """Settlement result for a participant. Written once, never updated."""

    __tablename__ = "event_outcomes"
    __table_args__ = (
        CheckConstraint("result IN ('win', 'loss', 'void')", name="ck_event_outcomes_result"),
    )

    id = Column(Integer, primary_key=True, index=True)
    participant_id = Column(Integer, ForeignKey("participants.id"), unique=True, nullable=False)
    result = Column(String(8), nullable=False)
    points_awarded = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    participant = relationship("Participant", back_populates="outcome")


class PlatformFee(Base):
    __tablename__ = "platform_fees"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    participant_id = Column(Integer, ForeignKey("participants.id"), nullable=False)
    fee_amount = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class PointsHistory(Base):
    __tablename__ = "points_history"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    change_amount = Column(Integer, nullable=False)
    new_balance = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)  # e.g. 'event_entry', 'event_win', 'admin_adjustment'
    note = Column(String, nullable=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    user = relationship("User", back_populates="history")
