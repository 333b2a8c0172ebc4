"""Core pot arithmetic for parimutuel events.

Every stake on an event goes into a single pot. When the event is resolved
the winners split the pot in proportion to their stake, less a platform fee.
This module is pure: it works on plain values and never touches the
database, so the settlement service can validate and compute a complete plan
before it writes anything.

Rounding is deterministic. Each winner's net payout is floored; the platform
keeps everything that is not paid out, so the sum of payouts and fees always
equals the pot.
"""

from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from typing import Dict, Iterable, List, Optional

from potmarket.errors import DataIntegrityError


@dataclass(frozen=True)
class StakeLine:
    participant_id: int
    user_id: int
    prediction: str
    amount: int


@dataclass
class PayoutLine:
    participant_id: int
    user_id: int
    result: str  # 'win', 'loss' or 'void'
    stake: int
    points_awarded: int
    fee: int = 0


@dataclass
class SettlementPlan:
    total_pool: int
    winning_pool: int
    lines: List[PayoutLine] = field(default_factory=list)

    @property
    def refunded(self) -> bool:
        return not self.winners

    @property
    def winners(self) -> List[PayoutLine]:
        return [line for line in self.lines if line.result == "win"]

    @property
    def total_paid(self) -> int:
        return sum(line.points_awarded for line in self.lines)

    @property
    def fee_collected(self) -> int:
        return sum(line.fee for line in self.lines)


def validate_stakes(stakes: Iterable[StakeLine]) -> List[StakeLine]:
    """Reject the whole batch if any stake amount is missing or negative.

    Raises:
        DataIntegrityError: naming the first offending participant.
    """
    checked = []
    for stake in stakes:
        amount = stake.amount
        if amount is None or isinstance(amount, bool) or not isinstance(amount, int):
            raise DataIntegrityError(
                f"Participant {stake.participant_id} has an invalid stake amount: {amount!r}"
            )
        if amount < 0:
            raise DataIntegrityError(
                f"Participant {stake.participant_id} has a negative stake amount: {amount}"
            )
        checked.append(stake)
    return checked


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def compute_settlement(stakes: Iterable[StakeLine], correct_answer: str, fee_rate) -> SettlementPlan:
    """Split the pot between the stakes that predicted ``correct_answer``.

    Args:
        stakes: Every stake on the event.
        correct_answer: The winning option value.
        fee_rate: Fraction of each winner's gross payout kept by the platform,
            in ``[0, 1)``.

    Returns:
        A ``SettlementPlan`` with one line per stake. If nobody picked the
        correct answer every stake is refunded in full as a ``void`` line and
        no fee is taken. A pot of zero (an event without stakes) still
        yields ``win``/``loss`` lines, all paying nothing.

    Raises:
        DataIntegrityError: If a stake amount is missing or negative, or the
            fee rate is outside ``[0, 1)``.
    """
    stakes = sorted(validate_stakes(stakes), key=lambda s: s.participant_id)
    rate = Decimal(str(fee_rate))
    if rate < 0 or rate >= 1:
        raise DataIntegrityError(f"Platform fee rate must be in [0, 1), got {rate}")

    total_pool = sum(s.amount for s in stakes)
    winners = [s for s in stakes if s.prediction == correct_answer]
    winning_pool = sum(s.amount for s in winners)
    plan = SettlementPlan(total_pool=total_pool, winning_pool=winning_pool)

    if not winners or (winning_pool == 0 and total_pool > 0):
        plan.lines = [
            PayoutLine(s.participant_id, s.user_id, "void", s.amount, points_awarded=s.amount)
            for s in stakes
        ]
        return plan

    if total_pool == 0:
        # Predictions without a pot: record who was right, nothing to pay.
        plan.lines = [
            PayoutLine(s.participant_id, s.user_id, "win" if s.prediction == correct_answer else "loss", 0, 0)
            for s in stakes
        ]
        return plan

    keep = Decimal(1) - rate
    paid_gross = 0
    for stake in stakes:
        if stake.prediction != correct_answer:
            plan.lines.append(PayoutLine(stake.participant_id, stake.user_id, "loss", stake.amount, 0))
            continue
        gross = stake.amount * total_pool // winning_pool
        net = _floor(Decimal(stake.amount * total_pool) * keep / Decimal(winning_pool))
        paid_gross += gross
        plan.lines.append(
            PayoutLine(stake.participant_id, stake.user_id, "win", stake.amount, net, fee=gross - net)
        )

    # Flooring the gross shares leaves at most one point per winner unassigned;
    # it goes to the platform on the largest winning stake.
    remainder = total_pool - paid_gross
    if remainder:
        top = max(plan.winners, key=lambda line: (line.stake, -line.participant_id))
        top.fee += remainder
    return plan


def option_odds(options: List[Dict], pools: Dict[str, int]) -> List[Dict]:
    """Return the live pool and indicative multiplier for each option.

    The multiplier is ``total_pool / option_pool``. It is only an estimate:
    the pot keeps changing until the event is locked, and the platform fee is
    not included.
    """
    total_pool = sum(pools.values())
    odds = []
    for option in options or []:
        value = option.get("value")
        pool = pools.get(value, 0)
        multiplier: Optional[float] = round(total_pool / pool, 4) if pool else None
        odds.append({
            "id": option.get("id"),
            "label": option.get("label", value),
            "value": value,
            "pool": pool,
            "multiplier": multiplier,
        })
    return odds
