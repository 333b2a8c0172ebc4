from datetime import timedelta

import pytest

from potmarket import ledger
from potmarket.errors import (
    DuplicateStake,
    EventClosed,
    InsufficientPoints,
    InvalidStake,
    UserNotFound,
)
from potmarket.models import Event, EventStatus, PointsHistory, User, utcnow
from potmarket.stakes import event_odds, place_stake


@pytest.fixture
def open_event(make_event):
    return make_event(
        title="BTC daily",
        status=EventStatus.OPEN,
        end_time=utcnow() + timedelta(hours=6),
        min_bet=100,
        max_bet=1000,
    )


def test_stake_debits_balance_and_grows_pot(db, make_user, open_event):
    user = make_user("alice")

    participant = place_stake(db, open_event.id, user.id, "Higher", 250)

    assert participant.amount == 250
    assert participant.settled is False
    db.expire_all()
    assert db.get(User, user.id).points == 750
    event = db.get(Event, open_event.id)
    assert event.prize_pool == 250
    assert event.total_bets == 1
    entry = db.query(PointsHistory).filter(PointsHistory.user_id == user.id).one()
    assert (entry.reason, entry.change_amount, entry.new_balance) == (ledger.EVENT_ENTRY, -250, 750)


def test_second_stake_on_same_event_is_rejected(db, make_user, open_event):
    user = make_user("alice")
    place_stake(db, open_event.id, user.id, "Higher", 100)

    with pytest.raises(DuplicateStake):
        place_stake(db, open_event.id, user.id, "Lower", 100)
    db.expire_all()
    assert db.get(User, user.id).points == 900


@pytest.mark.parametrize("prediction, amount", [("Sideways", 100), ("Higher", 50), ("Higher", 1001)])
def test_invalid_stakes_are_rejected(db, make_user, open_event, prediction, amount):
    user = make_user("alice")

    with pytest.raises(InvalidStake):
        place_stake(db, open_event.id, user.id, prediction, amount)


def test_stake_needs_enough_points(db, make_user, open_event):
    user = make_user("alice", points=100)

    with pytest.raises(InsufficientPoints):
        place_stake(db, open_event.id, user.id, "Higher", 200)


def test_unknown_user_cannot_stake(db, open_event):
    with pytest.raises(UserNotFound):
        place_stake(db, open_event.id, 12345, "Higher", 100)


def test_suspended_user_cannot_stake(db, make_user, open_event):
    user = make_user("alice")
    user.is_suspended = True
    db.commit()

    with pytest.raises(InvalidStake):
        place_stake(db, open_event.id, user.id, "Higher", 100)


@pytest.mark.parametrize("state, delta", [
    (EventStatus.LOCKED, timedelta(hours=1)),
    (EventStatus.OPEN, -timedelta(minutes=1)),
])
def test_closed_events_reject_stakes(db, make_user, make_event, state, delta):
    user = make_user("alice")
    event = make_event(status=state, end_time=utcnow() + delta)

    with pytest.raises(EventClosed):
        place_stake(db, event.id, user.id, "Higher", 100)


def test_event_odds_follow_the_pool(db, make_user, open_event):
    place_stake(db, open_event.id, make_user("a").id, "Higher", 300)
    place_stake(db, open_event.id, make_user("b").id, "Higher", 100)
    place_stake(db, open_event.id, make_user("c").id, "Lower", 200)

    odds = event_odds(db, open_event.id)

    assert odds["total_pool"] == 600
    by_value = {o["value"]: o for o in odds["options"]}
    assert by_value["Higher"]["pool"] == 400
    assert by_value["Higher"]["multiplier"] == 1.5
    assert by_value["Lower"]["multiplier"] == 3.0


@pytest.fixture
def no_pot_event(db, make_event):
    event = make_event(title="Derby winner", status=EventStatus.OPEN, end_time=utcnow() + timedelta(hours=6))
    event.pot_enabled = False
    db.commit()
    return event


def test_event_without_pot_records_prediction_for_free(db, make_user, no_pot_event):
    user = make_user("alice")

    participant = place_stake(db, no_pot_event.id, user.id, "Lower", 0)

    assert participant.amount == 0
    db.expire_all()
    assert db.get(User, user.id).points == 1000
    assert db.get(Event, no_pot_event.id).total_bets == 1
    assert db.query(PointsHistory).count() == 0
    assert event_odds(db, no_pot_event.id)["pot_enabled"] is False


def test_event_without_pot_rejects_point_stakes(db, make_user, no_pot_event):
    user = make_user("alice")

    with pytest.raises(InvalidStake):
        place_stake(db, no_pot_event.id, user.id, "Lower", 100)


def test_pot_event_rejects_zero_stake(db, make_user, open_event):
    with pytest.raises(InvalidStake):
        place_stake(db, open_event.id, make_user("alice").id, "Higher", 0)
