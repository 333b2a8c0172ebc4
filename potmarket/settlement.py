"""Settlement of resolved events.

``resolve_event`` is the only way an event reaches RESOLVED. It is called
both from the admin API and from automated resolvers, so it has to be safe
to call twice and safe to call concurrently:

* A status guard turns a repeat call on a RESOLVED event into
  ``AlreadyResolved`` before anything is written.
* The event is claimed with a conditional ``LOCKED -> RESOLVING`` update. Only
  the caller whose update changed a row goes on to pay out; everyone else
  gets ``ConcurrentResolutionConflict``.
* Outcomes, fees, balance changes and the final status flip are committed in
  one transaction. Any error rolls all of it back and the event stays LOCKED.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from potmarket import ledger
from potmarket.errors import (
    AlreadyResolved,
    ConcurrentResolutionConflict,
    InvalidResolutionInput,
    InvalidTransition,
    PotMarketError,
)
from potmarket.lifecycle import claim_for_resolution, get_event
from potmarket.logger import get_logger
from potmarket.models import (
    Event,
    EventOutcome,
    EventStatus,
    Participant,
    PlatformFee,
    ensure_utc,
    utcnow,
)
from potmarket.pot_logic import SettlementPlan, StakeLine, compute_settlement

logger = get_logger(__name__)


@dataclass
class SettlementResult:
    event_id: int
    correct_answer: str
    total_pool: int
    winners: int
    total_paid: int
    fee_collected: int
    refunded: bool

    def as_dict(self) -> dict:
        return asdict(self)


def _check_answer(event: Event, correct_answer: Optional[str]) -> str:
    answer = (correct_answer or "").strip()
    if not answer:
        raise InvalidResolutionInput("correct_answer must not be empty")
    values = event.option_values()
    if values and answer not in values:
        raise InvalidResolutionInput(
            f"'{answer}' is not an option of event {event.id}; expected one of {values}"
        )
    return answer


def _guard(db: Session, event: Event, now: datetime) -> None:
    """Reject events that are not waiting for settlement. Nothing has been written yet."""
    status = event.status
    if status == EventStatus.RESOLVED.value:
        raise AlreadyResolved(f"Event {event.id} is already resolved")
    if status == EventStatus.RESOLVING.value:
        raise ConcurrentResolutionConflict(f"Event {event.id} is being resolved by another request")
    if status == EventStatus.CANCELED.value:
        raise InvalidTransition(f"Event {event.id} was canceled and cannot be resolved")
    if status == EventStatus.OPEN.value:
        if ensure_utc(event.end_time) >= now:
            raise InvalidTransition(f"Event {event.id} is still open; lock it before resolving")
        # Expired but not swept yet: lock it as part of this transaction.
        db.execute(
            update(Event)
            .where(Event.id == event.id, Event.status == EventStatus.OPEN.value)
            .values(status=EventStatus.LOCKED.value)
            .execution_options(synchronize_session=False)
        )


def _apply_plan(db: Session, event: Event, plan: SettlementPlan, participants: dict) -> None:
    for line in plan.lines:
        participant = participants[line.participant_id]
        db.add(EventOutcome(
            participant_id=line.participant_id,
            result=line.result,
            points_awarded=line.points_awarded,
        ))
        if line.result == "win":
            ledger.apply_points_change(db, line.user_id, line.points_awarded, ledger.EVENT_WIN, event.id)
            if line.fee:
                db.add(PlatformFee(
                    event_id=event.id,
                    participant_id=line.participant_id,
                    fee_amount=line.fee,
                ))
        elif line.result == "loss":
            ledger.apply_points_change(db, line.user_id, 0, ledger.EVENT_LOSS, event.id)
        else:
            ledger.apply_points_change(db, line.user_id, line.points_awarded, ledger.EVENT_REFUND, event.id)
        participant.settled = True


def resolve_event(
    db: Session,
    event_id: int,
    correct_answer: str,
    final_price=None,
    now: Optional[datetime] = None,
) -> SettlementResult:
    """Settle ``event_id`` with ``correct_answer`` and commit the result.

    Raises:
        EventNotFound: No such event.
        AlreadyResolved: The event was settled before; nothing was written.
        ConcurrentResolutionConflict: Another resolver claimed the event.
        InvalidTransition: The event is canceled or still open.
        InvalidResolutionInput: ``correct_answer`` is empty or not an option.
        DataIntegrityError: A participant row has a missing or negative stake.
    """
    now = now or utcnow()
    event = get_event(db, event_id, for_update=True)
    try:
        _guard(db, event, now)
        answer = _check_answer(event, correct_answer)
        if not claim_for_resolution(db, event_id):
            raise ConcurrentResolutionConflict(f"Event {event_id} was claimed by another resolver")
        logger.info("Claimed event %s for settlement with answer '%s'", event_id, answer)

        participants = {
            p.id: p
            for p in db.query(Participant).filter(Participant.event_id == event_id).order_by(Participant.id)
        }
        stakes = [StakeLine(p.id, p.user_id, p.prediction, p.amount) for p in participants.values()]
        plan = compute_settlement(stakes, answer, event.fee_rate)
        _apply_plan(db, event, plan, participants)

        event.status = EventStatus.RESOLVED.value
        event.correct_answer = answer
        if final_price is not None:
            event.final_price = Decimal(str(final_price))
        event.platform_fee = (event.platform_fee or 0) + plan.fee_collected
        event.needs_review = False
        event.resolved_at = now
        db.commit()
    except PotMarketError as exc:
        db.rollback()
        logger.warning("Settlement of event %s not applied: %s", event_id, exc.detail)
        raise
    except Exception:
        db.rollback()
        logger.error("Settlement of event %s failed; rolled back", event_id, exc_info=True)
        raise

    result = SettlementResult(
        event_id=event_id,
        correct_answer=answer,
        total_pool=plan.total_pool,
        winners=len(plan.winners),
        total_paid=plan.total_paid,
        fee_collected=plan.fee_collected,
        refunded=plan.refunded,
    )
    logger.info(
        "Event %s resolved: pool=%d winners=%d paid=%d fee=%d refunded=%s",
        event_id, result.total_pool, result.winners, result.total_paid, result.fee_collected, result.refunded,
    )
    return result
