"""Stake placement and live pool figures."""

from typing import Dict

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from potmarket import ledger
from potmarket.errors import (
    DuplicateStake,
    EventClosed,
    InsufficientPoints,
    InvalidStake,
    UserNotFound,
)
from potmarket.lifecycle import get_event
from potmarket.logger import get_logger
from potmarket.models import EventStatus, Participant, User, ensure_utc, utcnow
from potmarket.pot_logic import option_odds

logger = get_logger(__name__)


def place_stake(db: Session, event_id: int, user_id: int, prediction: str, amount: int) -> Participant:
    """Stake ``amount`` points of ``user_id`` on ``prediction``.

    The event row is locked for the duration so the pot totals stay
    consistent with the participants table. Events with ``pot_enabled`` off
    only record the prediction, so ``amount`` must be zero there.
    """
    event = get_event(db, event_id, for_update=True)
    try:
        if event.status != EventStatus.OPEN.value or ensure_utc(event.end_time) <= utcnow():
            raise EventClosed(f"Event {event_id} is closed for predictions")
        if prediction not in event.option_values():
            raise InvalidStake(f"'{prediction}' is not an option of event {event_id}")
        if not event.pot_enabled:
            if amount != 0:
                raise InvalidStake(f"Event {event_id} has no pot; predictions carry no stake")
        elif amount < event.min_bet or amount > event.max_bet:
            raise InvalidStake(f"Stake must be between {event.min_bet} and {event.max_bet} points")

        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise UserNotFound(f"User {user_id} not found")
        if user.is_suspended:
            raise InvalidStake("Suspended users cannot place stakes")

        existing = (
            db.query(Participant)
            .filter(Participant.event_id == event_id, Participant.user_id == user_id)
            .first()
        )
        if existing:
            raise DuplicateStake(f"User {user_id} already has a stake on event {event_id}")
        if user.points < amount:
            raise InsufficientPoints("Insufficient points for this stake")

        if amount:
            ledger.apply_points_change(db, user_id, -amount, ledger.EVENT_ENTRY, event_id)
        participant = Participant(event_id=event_id, user_id=user_id, prediction=prediction, amount=amount)
        db.add(participant)
        event.prize_pool = (event.prize_pool or 0) + amount
        event.total_bets = (event.total_bets or 0) + 1
        db.commit()
    except IntegrityError:
        # Lost a race against a parallel request from the same user.
        db.rollback()
        raise DuplicateStake(f"User {user_id} already has a stake on event {event_id}")
    except Exception:
        db.rollback()
        raise

    db.refresh(participant)
    logger.info("User %s staked %d on '%s' for event %s", user_id, amount, prediction, event_id)
    return participant


def option_pools(db: Session, event_id: int) -> Dict[str, int]:
    rows = (
        db.query(Participant.prediction, func.coalesce(func.sum(Participant.amount), 0))
        .filter(Participant.event_id == event_id)
        .group_by(Participant.prediction)
        .all()
    )
    return {prediction: int(total) for prediction, total in rows}


def event_odds(db: Session, event_id: int) -> dict:
    event = get_event(db, event_id)
    pools = option_pools(db, event_id)
    return {
        "event_id": event.id,
        "status": event.status,
        "pot_enabled": event.pot_enabled,
        "total_pool": sum(pools.values()),
        "options": option_odds(event.options, pools),
    }
