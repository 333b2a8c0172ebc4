"""Tests for platform fee transfers."""

import threading

import pytest

from potmarket import admin, ledger
from potmarket.errors import InsufficientFees, UserNotFound
from potmarket.models import EventStatus, PointsHistory, User


@pytest.fixture
def collected_fees(db, make_event):
    event = make_event(status=EventStatus.RESOLVED)
    event.platform_fee = 51
    db.commit()
    return 51


def test_transfer_credits_user_and_reduces_available_fees(db, make_user, collected_fees):
    treasurer = make_user("treasurer", points=0)

    summary = admin.transfer_platform_fees(db, treasurer.id, 30)

    assert summary["fees_remaining"] == 21
    assert summary["user_points_after"] == 30
    assert admin.total_platform_fees(db) == 21
    entry = db.query(PointsHistory).filter(PointsHistory.reason == ledger.PLATFORM_FEE_TRANSFER).one()
    assert (entry.user_id, entry.change_amount) == (treasurer.id, 30)


@pytest.mark.parametrize("amount", [0, -5, 52])
def test_transfer_rejects_amounts_outside_available_fees(db, make_user, collected_fees, amount):
    treasurer = make_user("treasurer", points=0)

    with pytest.raises(InsufficientFees):
        admin.transfer_platform_fees(db, treasurer.id, amount)
    assert admin.total_platform_fees(db) == 51


def test_transfer_to_unknown_user_changes_nothing(db, collected_fees):
    with pytest.raises(UserNotFound):
        admin.transfer_platform_fees(db, 999, 10)
    assert admin.total_platform_fees(db) == 51


def test_parallel_transfers_cannot_overspend_fees(db, session_factory, make_user, collected_fees):
    recipients = [make_user("first", points=0), make_user("second", points=0)]
    barrier = threading.Barrier(2)
    outcomes = []

    def transfer(user_id):
        session = session_factory()
        try:
            barrier.wait(timeout=10)
            outcomes.append(admin.transfer_platform_fees(session, user_id, 40))
        except InsufficientFees as exc:
            outcomes.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=transfer, args=(user.id,)) for user in recipients]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert len(outcomes) == 2
    assert len([o for o in outcomes if isinstance(o, dict)]) == 1
    db.expire_all()
    assert admin.total_platform_fees(db) == 11
    balances = db.query(User.points).filter(User.id.in_([u.id for u in recipients])).all()
    assert sorted(points for (points,) in balances) == [0, 40]
