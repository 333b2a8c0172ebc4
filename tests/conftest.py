from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from potmarket.config import settings
from potmarket.database import get_db, init_db, make_engine
from potmarket.main import app
from potmarket.models import Event, EventStatus, Participant, User, utcnow

HIGHER_LOWER = [
    {"id": "higher", "label": "Higher", "value": "Higher"},
    {"id": "lower", "label": "Lower", "value": "Lower"},
]


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'potmarket_test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {
        "X-Admin-Username": settings.admin_username,
        "X-Admin-Password": settings.admin_password,
    }


@pytest.fixture
def make_user(db):
    def _make_user(username, points=1000):
        user = User(
            username=username,
            email=f"{username}@example.com",
            password_hash="not-a-real-hash",
            points=points,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_event(db):
    def _make_event(
        title="Will BTC close higher?",
        status=EventStatus.LOCKED,
        end_time=None,
        options=None,
        fee_rate="0.05",
        min_bet=1,
        max_bet=10_000,
    ):
        event = Event(
            title=title,
            category="crypto",
            options=options if options is not None else HIGHER_LOWER,
            start_time=utcnow() - timedelta(days=1),
            end_time=end_time or utcnow() - timedelta(minutes=5),
            status=status.value,
            fee_rate=Decimal(fee_rate),
            min_bet=min_bet,
            max_bet=max_bet,
        )
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    return _make_event


@pytest.fixture
def add_stake(db):
    """Insert a participant row directly, as if the entry had already been paid."""

    def _add_stake(event, user, prediction, amount):
        participant = Participant(event_id=event.id, user_id=user.id, prediction=prediction, amount=amount)
        db.add(participant)
        db.commit()
        db.refresh(participant)
        return participant

    return _add_stake
