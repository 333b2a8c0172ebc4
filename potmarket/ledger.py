"""Points ledger.

All balance changes go through ``apply_points_change`` so that
``users.points`` and ``points_history`` never disagree. The function does not
commit: callers fold it into their own transaction.
"""

from sqlalchemy.orm import Session

from potmarket.errors import UserNotFound
from potmarket.logger import get_logger
from potmarket.models import PointsHistory, User

logger = get_logger(__name__)

INITIAL_BALANCE = "initial_balance"
EVENT_ENTRY = "event_entry"
EVENT_WIN = "event_win"
EVENT_LOSS = "event_loss"
EVENT_REFUND = "event_refund"
PLATFORM_FEE_TRANSFER = "platform_fee_transfer"
ADMIN_ADJUSTMENT = "admin_adjustment"


def apply_points_change(db: Session, user_id: int, amount: int, reason: str, event_id=None, note=None) -> int:
    """Add ``amount`` (may be negative or zero) to a user's balance.

    The user row is read ``FOR UPDATE`` so concurrent settlements touching the
    same user serialize on it. A history row with the resulting balance is
    added to the session.

    Returns:
        The new balance.

    Raises:
        UserNotFound: If ``user_id`` does not exist.
    """
    # Pending changes must be flushed or populate_existing would discard them.
    db.flush()
    user = (
        db.query(User)
        .filter(User.id == user_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not user:
        raise UserNotFound(f"User {user_id} not found")

    user.points = (user.points or 0) + amount
    db.add(PointsHistory(
        user_id=user.id,
        change_amount=amount,
        new_balance=user.points,
        reason=reason,
        note=note,
        event_id=event_id,
    ))
    logger.debug("points %+d for user %s (%s), balance %s", amount, user.id, reason, user.points)
    return user.points
