from datetime import timedelta

import pytest

from potmarket import ledger, lifecycle, settlement
from potmarket.errors import EventNotFound, InvalidTransition
from potmarket.models import Event, EventOutcome, EventStatus, PointsHistory, User, utcnow
from potmarket.stakes import place_stake


def test_lock_expired_events_only_touches_open_past_events(db, make_event):
    now = utcnow()
    expired = make_event(title="expired", status=EventStatus.OPEN, end_time=now - timedelta(minutes=1))
    running = make_event(title="running", status=EventStatus.OPEN, end_time=now + timedelta(hours=1))
    resolved = make_event(title="resolved", status=EventStatus.RESOLVED, end_time=now - timedelta(days=1))

    assert lifecycle.lock_expired_events(db, now) == 1

    db.expire_all()
    assert db.get(Event, expired.id).status == EventStatus.LOCKED.value
    assert db.get(Event, running.id).status == EventStatus.OPEN.value
    assert db.get(Event, resolved.id).status == EventStatus.RESOLVED.value


def test_admin_can_lock_open_event_early(db, make_event):
    event = make_event(status=EventStatus.OPEN, end_time=utcnow() + timedelta(hours=3))

    locked = lifecycle.lock_event(db, event.id)

    assert locked.status == EventStatus.LOCKED.value
    with pytest.raises(InvalidTransition):
        lifecycle.lock_event(db, event.id)


def test_missing_event_raises(db):
    with pytest.raises(EventNotFound):
        lifecycle.get_event(db, 404)


def test_list_pending_resolution_is_oldest_first(db, make_event):
    now = utcnow()
    late = make_event(title="late", status=EventStatus.LOCKED, end_time=now - timedelta(hours=1))
    early = make_event(title="early", status=EventStatus.LOCKED, end_time=now - timedelta(hours=5))
    unswept = make_event(title="unswept", status=EventStatus.OPEN, end_time=now - timedelta(hours=3))
    make_event(title="future", status=EventStatus.OPEN, end_time=now + timedelta(hours=1))
    make_event(title="done", status=EventStatus.RESOLVED, end_time=now - timedelta(hours=9))
    make_event(title="called off", status=EventStatus.CANCELED, end_time=now - timedelta(hours=9))

    pending = lifecycle.list_pending_resolution(db, now)

    assert [e.id for e in pending] == [early.id, unswept.id, late.id]
    assert all(e.resolution_status == "pending" for e in pending)


def test_stale_locked_events_are_flagged_once(db, make_event):
    now = utcnow()
    stale = make_event(title="stale", end_time=now - timedelta(hours=30))
    fresh = make_event(title="fresh", end_time=now - timedelta(hours=2))

    flagged = lifecycle.flag_stale_events(db, now, grace=timedelta(hours=24))

    assert [e.id for e in flagged] == [stale.id]
    db.expire_all()
    assert db.get(Event, stale.id).needs_review is True
    assert db.get(Event, fresh.id).needs_review is False
    assert lifecycle.flag_stale_events(db, now, grace=timedelta(hours=24)) == []


def test_cancel_refunds_every_stake(db, make_user, make_event):
    alice = make_user("alice")
    bob = make_user("bob")
    event = make_event(status=EventStatus.OPEN, end_time=utcnow() + timedelta(hours=1))
    place_stake(db, event.id, alice.id, "Higher", 400)
    place_stake(db, event.id, bob.id, "Lower", 250)

    summary = lifecycle.cancel_event(db, event.id)

    assert summary["total_refunded"] == 650
    assert sorted(summary["refunded_users"]) == sorted([alice.id, bob.id])
    db.expire_all()
    assert db.get(User, alice.id).points == 1000
    assert db.get(User, bob.id).points == 1000
    assert db.get(Event, event.id).status == EventStatus.CANCELED.value
    assert {o.result for o in db.query(EventOutcome)} == {"void"}
    reasons = [h.reason for h in db.query(PointsHistory).filter(PointsHistory.user_id == alice.id).order_by(PointsHistory.id)]
    assert reasons == [ledger.EVENT_ENTRY, ledger.EVENT_REFUND]


@pytest.mark.parametrize("state", [EventStatus.RESOLVED, EventStatus.CANCELED])
def test_finished_events_cannot_be_canceled(db, make_event, state):
    event = make_event(status=state)

    with pytest.raises(InvalidTransition):
        lifecycle.cancel_event(db, event.id)


def _resolve_elsewhere_after_read(monkeypatch, session_factory, answer):
    """Let another session settle the event right after ``cancel_event`` has read it."""
    real_get_event = lifecycle.get_event

    def get_then_resolve(db, event_id, for_update=False):
        event = real_get_event(db, event_id, for_update)
        other = session_factory()
        try:
            settlement.resolve_event(other, event_id, answer)
        finally:
            other.close()
        return event

    monkeypatch.setattr(lifecycle, "get_event", get_then_resolve)


def test_cancel_loses_to_a_resolve_that_committed_first(db, session_factory, make_user, make_event,
                                                        add_stake, monkeypatch):
    alice = make_user("alice")
    bob = make_user("bob")
    event = make_event()
    add_stake(event, alice, "Higher", 100)
    add_stake(event, bob, "Lower", 300)
    _resolve_elsewhere_after_read(monkeypatch, session_factory, "Higher")

    with pytest.raises(InvalidTransition):
        lifecycle.cancel_event(db, event.id)

    db.expire_all()
    assert db.get(Event, event.id).status == EventStatus.RESOLVED.value
    assert db.get(User, alice.id).points == 1380
    assert db.get(User, bob.id).points == 1000
    assert {o.result for o in db.query(EventOutcome)} == {"win", "loss"}
    assert db.query(PointsHistory).filter(PointsHistory.reason == ledger.EVENT_REFUND).count() == 0


def test_cancel_does_not_overwrite_resolved_event_without_participants(db, session_factory, make_event,
                                                                       monkeypatch):
    event = make_event()
    _resolve_elsewhere_after_read(monkeypatch, session_factory, "Lower")

    with pytest.raises(InvalidTransition):
        lifecycle.cancel_event(db, event.id)

    db.expire_all()
    assert db.get(Event, event.id).status == EventStatus.RESOLVED.value
