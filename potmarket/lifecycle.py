"""Event lifecycle: OPEN -> LOCKED -> RESOLVED, or CANCELED.

OPEN -> LOCKED happens when ``end_time`` passes (``lock_expired_events``,
called by the sweep) or when an admin locks an event early. LOCKED ->
RESOLVED is owned by the settlement service, which claims the event with
``claim_for_resolution`` first.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from potmarket import ledger
from potmarket.config import settings
from potmarket.errors import DataIntegrityError, EventNotFound, InvalidTransition
from potmarket.logger import get_logger
from potmarket.models import Event, EventOutcome, EventStatus, OutcomeResult, Participant, utcnow

logger = get_logger(__name__)

CANCELABLE = (EventStatus.OPEN.value, EventStatus.LOCKED.value)


def get_event(db: Session, event_id: int, for_update: bool = False) -> Event:
    query = db.query(Event).filter(Event.id == event_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    event = query.first()
    if not event:
        raise EventNotFound(f"Event {event_id} not found")
    return event


def lock_expired_events(db: Session, now: Optional[datetime] = None) -> int:
    """Lock every OPEN event whose ``end_time`` has passed. Returns the count."""
    now = now or utcnow()
    result = db.execute(
        update(Event)
        .where(Event.status == EventStatus.OPEN.value, Event.end_time < now)
        .values(status=EventStatus.LOCKED.value)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info("Locked %d expired events", result.rowcount)
    return result.rowcount


def lock_event(db: Session, event_id: int) -> Event:
    """Close an OPEN event to new stakes before its ``end_time``."""
    event = get_event(db, event_id, for_update=True)
    if event.status != EventStatus.OPEN.value:
        db.rollback()
        raise InvalidTransition(f"Event {event_id} is {event.status}; only OPEN events can be locked")
    event.status = EventStatus.LOCKED.value
    db.commit()
    db.refresh(event)
    logger.info("Event %s locked by admin", event_id)
    return event


def cancel_event(db: Session, event_id: int) -> dict:
    """Cancel an OPEN or LOCKED event and refund every unsettled stake.

    The event is claimed with a conditional ``OPEN/LOCKED -> CANCELED`` update
    before any refund is written, so a cancel racing a resolve can never
    overwrite a committed RESOLVED event.
    """
    event = get_event(db, event_id, for_update=True)
    if event.status not in CANCELABLE:
        db.rollback()
        raise InvalidTransition(f"Event {event_id} is {event.status} and cannot be canceled")

    refunded_users = []
    total_refunds = 0
    try:
        claimed = db.execute(
            update(Event)
            .where(Event.id == event_id, Event.status.in_(CANCELABLE))
            .values(status=EventStatus.CANCELED.value)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise InvalidTransition(f"Event {event_id} changed state and can no longer be canceled")

        participants = (
            db.query(Participant)
            .filter(Participant.event_id == event_id, Participant.settled.is_(False))
            .order_by(Participant.id)
            .all()
        )
        for participant in participants:
            amount = participant.amount
            if amount is None or amount < 0:
                raise DataIntegrityError(
                    f"Participant {participant.id} has an invalid stake amount: {amount!r}"
                )
            ledger.apply_points_change(db, participant.user_id, amount, ledger.EVENT_REFUND, event_id)
            db.add(EventOutcome(
                participant_id=participant.id,
                result=OutcomeResult.VOID.value,
                points_awarded=amount,
            ))
            participant.settled = True
            refunded_users.append(participant.user_id)
            total_refunds += amount

        db.commit()
    except InvalidTransition as exc:
        db.rollback()
        logger.warning("Cancel of event %s not applied: %s", event_id, exc.detail)
        raise
    except Exception:
        db.rollback()
        logger.error("Cancel of event %s failed", event_id, exc_info=True)
        raise

    logger.info("Event %s canceled; %d users refunded %d points", event_id, len(refunded_users), total_refunds)
    return {
        "event_id": event_id,
        "refunded_users": refunded_users,
        "total_refunded": total_refunds,
    }


def list_pending_resolution(db: Session, now: Optional[datetime] = None) -> List[Event]:
    """Events waiting for an answer, earliest ``end_time`` first.

    This includes OPEN events whose ``end_time`` has passed but which the
    sweep has not locked yet.
    """
    now = now or utcnow()
    return (
        db.query(Event)
        .filter(
            or_(
                Event.status == EventStatus.LOCKED.value,
                and_(Event.status == EventStatus.OPEN.value, Event.end_time < now),
            )
        )
        .order_by(Event.end_time.asc(), Event.id.asc())
        .all()
    )


def flag_stale_events(db: Session, now: Optional[datetime] = None, grace: Optional[timedelta] = None) -> List[Event]:
    """Mark LOCKED events that have waited longer than ``grace`` for review."""
    now = now or utcnow()
    grace = grace if grace is not None else timedelta(hours=settings.stale_lock_hours)
    stale = (
        db.query(Event)
        .filter(
            Event.status == EventStatus.LOCKED.value,
            Event.end_time < now - grace,
            Event.needs_review.is_(False),
        )
        .order_by(Event.end_time.asc())
        .all()
    )
    for event in stale:
        event.needs_review = True
        logger.warning("Event %s (%s) has been LOCKED since %s; needs manual resolution",
                       event.id, event.title, event.end_time)
    db.commit()
    return stale


def claim_for_resolution(db: Session, event_id: int) -> bool:
    """Move a LOCKED event to RESOLVING inside the caller's transaction.

    Returns ``True`` only if this call changed exactly one row. A concurrent
    resolver that already claimed the event blocks this update until it
    commits, after which the ``status`` predicate no longer matches.
    """
    result = db.execute(
        update(Event)
        .where(Event.id == event_id, Event.status == EventStatus.LOCKED.value)
        .values(status=EventStatus.RESOLVING.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
