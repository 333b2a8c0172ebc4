"""Admin operations that are not part of the settlement path."""

import math
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from potmarket import ledger
from potmarket.config import settings
from potmarket.errors import DuplicateEvent, InsufficientFees, InvalidEvent, InvalidUserUpdate, UserNotFound
from potmarket.leaderboard import normalize_page
from potmarket.lifecycle import get_event
from potmarket.logger import get_logger
from potmarket.models import (
    Event,
    EventOutcome,
    EventStatus,
    Participant,
    PointsHistory,
    User,
    ensure_utc,
    utcnow,
)

logger = get_logger(__name__)


def create_event(
    db: Session,
    title: str,
    options: List[dict],
    end_time: datetime,
    start_time: Optional[datetime] = None,
    description: Optional[str] = None,
    category: Optional[str] = None,
    min_bet: Optional[int] = None,
    max_bet: Optional[int] = None,
    fee_rate=None,
    pot_enabled: bool = True,
) -> Event:
    start_time = ensure_utc(start_time) or utcnow()
    end_time = ensure_utc(end_time)
    min_bet = settings.default_min_bet if min_bet is None else min_bet
    max_bet = settings.default_max_bet if max_bet is None else max_bet

    if end_time <= start_time:
        raise InvalidEvent("End time must be after start time")
    if len(options) < 2:
        raise InvalidEvent("An event needs at least two options")
    values = [opt.get("value") for opt in options]
    if len(set(values)) != len(values) or not all(values):
        raise InvalidEvent("Option values must be unique and non-empty")
    if min_bet < 1 or min_bet > max_bet:
        raise InvalidEvent("min_bet must be positive and not above max_bet")
    if db.query(Event).filter(Event.title == title).first():
        raise DuplicateEvent("Event title already exists")

    event = Event(
        title=title,
        description=description,
        category=category,
        options=[
            {"id": opt.get("id") or opt["value"], "label": opt.get("label") or opt["value"], "value": opt["value"]}
            for opt in options
        ],
        start_time=start_time,
        end_time=end_time,
        status=EventStatus.OPEN.value,
        min_bet=min_bet,
        max_bet=max_bet,
        fee_rate=settings.platform_fee_rate if fee_rate is None else fee_rate,
        pot_enabled=pot_enabled,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    logger.info("Created event %s '%s' ending %s", event.id, title, end_time.isoformat())
    return event


def event_participants(db: Session, event_id: int) -> List[dict]:
    get_event(db, event_id)
    rows = (
        db.query(Participant, User.username, EventOutcome)
        .join(User, Participant.user_id == User.id)
        .outerjoin(EventOutcome, EventOutcome.participant_id == Participant.id)
        .filter(Participant.event_id == event_id)
        .order_by(Participant.id)
        .all()
    )
    return [
        {
            "id": p.id,
            "user_id": p.user_id,
            "username": username,
            "prediction": p.prediction,
            "amount": p.amount,
            "settled": p.settled,
            "created_at": p.created_at,
            "outcome": outcome.result if outcome else None,
            "points_awarded": outcome.points_awarded if outcome else None,
        }
        for p, username, outcome in rows
    ]


def total_platform_fees(db: Session) -> int:
    """Fees collected by settlement minus what admins have already paid out."""
    collected = db.query(func.coalesce(func.sum(Event.platform_fee), 0)).scalar()
    transferred = (
        db.query(func.coalesce(func.sum(PointsHistory.change_amount), 0))
        .filter(PointsHistory.reason == ledger.PLATFORM_FEE_TRANSFER)
        .scalar()
    )
    return int(collected) - int(transferred)


def transfer_platform_fees(db: Session, user_id: int, amount: int) -> dict:
    """Pay ``amount`` collected fee points to ``user_id``.

    The credit is written and flushed before the available total is checked
    again inside the same transaction. Event rows holding fees are locked
    first, so parallel transfers cannot both spend the same fees.
    """
    if amount <= 0:
        raise InsufficientFees("amount must be a positive number")
    available = total_platform_fees(db)
    if amount > available:
        raise InsufficientFees(f"Insufficient platform fees. Available: {available}")
    try:
        db.query(Event.id).filter(Event.platform_fee > 0).with_for_update().all()
        new_balance = ledger.apply_points_change(db, user_id, amount, ledger.PLATFORM_FEE_TRANSFER)
        db.flush()
        remaining = total_platform_fees(db)
        if remaining < 0:
            raise InsufficientFees(f"Insufficient platform fees. Available: {remaining + amount}")
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Transferred %d platform fee points to user %s", amount, user_id)
    return {
        "amount_transferred": amount,
        "user_id": user_id,
        "user_points_after": new_balance,
        "fees_remaining": remaining,
    }


def get_metrics(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()

    def count(*criteria):
        return db.query(Event).filter(*criteria).count()

    return {
        "total_events": count(),
        "open_events": count(Event.status == EventStatus.OPEN.value, Event.end_time >= now),
        "resolved_events": count(Event.status == EventStatus.RESOLVED.value),
        "pending_events": count(
            Event.status.in_([EventStatus.OPEN.value, EventStatus.LOCKED.value]), Event.end_time < now
        ),
        "total_fees": total_platform_fees(db),
    }


def _get_user(db: Session, user_id: int, for_update: bool = False) -> User:
    query = db.query(User).filter(User.id == user_id)
    if for_update:
        query = query.with_for_update()
    user = query.first()
    if not user:
        raise UserNotFound(f"User {user_id} not found")
    return user


def list_users(db: Session, page=1, limit=20, search: Optional[str] = None) -> dict:
    """Newest users first, optionally filtered by a username/email substring."""
    page, limit = normalize_page(page, limit)
    query = db.query(User)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(User.username.ilike(pattern), User.email.ilike(pattern)))

    total = query.count()
    users = (
        query.order_by(User.created_at.desc(), User.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
        .all()
    )
    return {
        "users": users,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit),
    }


def get_user_details(db: Session, user_id: int) -> dict:
    user = _get_user(db, user_id)
    total_events = db.query(Participant).filter(Participant.user_id == user_id).count()
    won_events = (
        db.query(EventOutcome)
        .join(Participant, EventOutcome.participant_id == Participant.id)
        .filter(Participant.user_id == user_id, EventOutcome.result == "win")
        .count()
    )
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "points": user.points,
        "is_admin": user.is_admin,
        "is_suspended": user.is_suspended,
        "created_at": user.created_at,
        "total_events": total_events,
        "won_events": won_events,
    }


def adjust_user_points(db: Session, user_id: int, points: int, reason: str) -> dict:
    """Credit or debit a user by hand. ``reason`` is kept on the history row."""
    if not points:
        raise InvalidUserUpdate("points must be a non-zero number")
    reason = (reason or "").strip()
    if not reason:
        raise InvalidUserUpdate("A reason is required")

    try:
        before = _get_user(db, user_id, for_update=True).points
        new_balance = ledger.apply_points_change(db, user_id, points, ledger.ADMIN_ADJUSTMENT, note=reason)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Admin adjusted user %s by %+d (%s): %d -> %d", user_id, points, reason, before, new_balance)
    return {
        "user_id": user_id,
        "points_adjusted": points,
        "points_before": before,
        "new_total": new_balance,
        "reason": reason,
    }


def set_user_role(db: Session, user_id: int, is_admin: bool) -> User:
    user = _get_user(db, user_id)
    user.is_admin = is_admin
    db.commit()
    db.refresh(user)
    logger.info("User %s is_admin=%s", user_id, is_admin)
    return user


def set_user_suspended(db: Session, user_id: int, is_suspended: bool) -> User:
    """Suspended users keep their balance but cannot place new stakes."""
    user = _get_user(db, user_id)
    user.is_suspended = is_suspended
    db.commit()
    db.refresh(user)
    logger.info("User %s is_suspended=%s", user_id, is_suspended)
    return user
