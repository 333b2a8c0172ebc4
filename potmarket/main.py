"""FastAPI application exposing the points pot market API.

This module wires the database models, lifecycle, settlement and
leaderboard services to HTTP endpoints. Users register, stake points on
event options and climb the leaderboard; admins create, lock, cancel and
resolve events. All input and output is JSON.

Authentication is deliberately thin: player endpoints take a ``user_id`` and
admin endpoints compare ``X-Admin-Username``/``X-Admin-Password`` headers
against the configured credentials. Token issuance lives outside this
service.
"""

import hashlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from potmarket import admin, ledger, leaderboard, lifecycle, scheduler, settlement, stakes
from potmarket.config import settings
from potmarket.database import get_db, init_db
from potmarket.errors import AlreadyResolved, PotMarketError, UserNotFound
from potmarket.logger import setup_logger
from potmarket.models import Event, EventStatus, PointsHistory, User, ensure_utc

logger = setup_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # In production the schema may be managed separately, but for a quick
    # start creating missing tables on boot is convenient.
    init_db()
    if settings.sweep_enabled:
        scheduler.start_scheduler()
    logger.info("potmarket API started")
    yield
    scheduler.shutdown_scheduler()


app = FastAPI(title="Points Pot Market API", version="0.2.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PotMarketError)
async def potmarket_error_handler(request: Request, exc: PotMarketError):
    """Return domain errors as ``{"detail": ...}`` with the error's status code."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": type(exc).__name__},
    )


def get_password_hash(password: str) -> str:
    """Compute a SHA-256 hash of the given password.

    A proper deployment should use a salted, slow hash such as bcrypt. The
    resulting hex digest is stored in the database.
    """
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def verify_admin(
    x_admin_username: str = Header(...),
    x_admin_password: str = Header(...),
):
    """Check the request headers against the single admin account."""
    if x_admin_username != settings.admin_username or x_admin_password != settings.admin_password:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )


def _utc(v):
    if v is None:
        return v
    if isinstance(v, str):
        v = datetime.fromisoformat(v.replace("Z", "+00:00"))
    return ensure_utc(v)


# Pydantic models for request and response bodies. These enforce input
# validation and generate API documentation automatically.

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, examples=["alice"])
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", examples=["alice@example.com"])
    password: str = Field(..., min_length=8, examples=["secret123"])


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    points: int
    is_admin: bool = False
    is_suspended: bool = False


class HistoryItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    change_amount: int
    new_balance: int
    reason: str
    note: Optional[str] = None
    event_id: Optional[int] = None
    created_at: datetime

    @field_validator("created_at", mode="before")
    @classmethod
    def ensure_utc(cls, v):
        return _utc(v)


class EventOption(BaseModel):
    id: Optional[str] = None
    label: Optional[str] = None
    value: str


class EventCreateRequest(BaseModel):
    title: str = Field(..., examples=["Will BTC close higher today?"])
    description: Optional[str] = None
    category: Optional[str] = Field(None, examples=["crypto"])
    options: List[EventOption] = Field(..., min_length=2)
    start_time: Optional[datetime] = None
    end_time: datetime = Field(..., examples=["2026-12-31T23:59:00Z"])
    min_bet: Optional[int] = Field(None, ge=1)
    max_bet: Optional[int] = Field(None, ge=1)
    fee_rate: Optional[float] = Field(None, ge=0.0, lt=1.0)
    pot_enabled: bool = True


class EventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    status: str
    resolution_status: str
    options: List[EventOption]
    correct_answer: Optional[str] = None
    final_price: Optional[float] = None
    start_time: datetime
    end_time: datetime
    pot_enabled: bool
    min_bet: int
    max_bet: int
    fee_rate: float
    platform_fee: int
    prize_pool: int
    total_bets: int
    needs_review: bool
    resolved_at: Optional[datetime] = None

    @field_validator("start_time", "end_time", "resolved_at", mode="before")
    @classmethod
    def ensure_utc(cls, v):
        return _utc(v)


class StakeRequest(BaseModel):
    user_id: int = Field(..., examples=[1])
    prediction: str = Field(..., examples=["Higher"])
    amount: int = Field(..., ge=0, examples=[250])


class StakeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_id: int
    user_id: int
    prediction: str
    amount: int
    new_balance: int


class ResolveRequest(BaseModel):
    correct_answer: str = Field(..., examples=["Higher"])
    final_price: Optional[float] = Field(None, examples=[67250.12])


class ResolveResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_id: int
    correct_answer: str
    winners: int
    total_paid: int
    fee_collected: int
    total_pool: int
    refunded: bool


class FeeTransferRequest(BaseModel):
    user_id: int
    amount: int = Field(..., gt=0)


class AdminUserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    points: int
    is_admin: bool
    is_suspended: bool
    created_at: datetime

    @field_validator("created_at", mode="before")
    @classmethod
    def ensure_utc(cls, v):
        return _utc(v)


class AdminUserDetail(AdminUserResponse):
    total_events: int
    won_events: int


class UserPage(BaseModel):
    users: List[AdminUserResponse]
    total: int
    page: int
    limit: int
    pages: int


class PointsAdjustRequest(BaseModel):
    points: int = Field(..., examples=[-250])
    reason: str = Field(..., min_length=1, examples=["Refund for a mis-settled event"])


class RoleRequest(BaseModel):
    is_admin: bool


class SuspendRequest(BaseModel):
    is_suspended: bool


@app.get("/")
def root():
    return {"message": "Points Pot Market API is running!"}


@app.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register(request: RegisterRequest, db: Session = Depends(get_db)):
    """Create a user and credit the starting balance through the ledger."""
    existing = (
        db.query(User)
        .filter((User.username == request.username) | (User.email == request.email))
        .first()
    )
    if existing:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username or email already exists")

    user = User(
        username=request.username,
        email=request.email,
        password_hash=get_password_hash(request.password),
        points=0,
    )
    try:
        db.add(user)
        db.flush()
        ledger.apply_points_change(db, user.id, settings.initial_points, ledger.INITIAL_BALANCE)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username or email already exists")
    db.refresh(user)
    return user


@app.get("/user/{user_id}", response_model=UserResponse)
def get_user(user_id: int, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise UserNotFound(f"User {user_id} not found")
    return user


@app.get("/user/{user_id}/history", response_model=List[HistoryItem])
def get_user_history(user_id: int, db: Session = Depends(get_db)):
    """Return every balance change for a user, newest first."""
    if not db.query(User).filter(User.id == user_id).first():
        raise UserNotFound(f"User {user_id} not found")
    return (
        db.query(PointsHistory)
        .filter(PointsHistory.user_id == user_id)
        .order_by(PointsHistory.id.desc())
        .all()
    )


@app.get("/events", response_model=List[EventResponse])
def list_events(
    status_filter: Optional[EventStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
):
    query = db.query(Event)
    if status_filter is not None:
        query = query.filter(Event.status == status_filter.value)
    return query.order_by(Event.end_time.asc()).all()


@app.get("/events/{event_id}", response_model=EventResponse)
def get_event(event_id: int, db: Session = Depends(get_db)):
    return lifecycle.get_event(db, event_id)


@app.get("/events/{event_id}/odds")
def get_event_odds(event_id: int, db: Session = Depends(get_db)):
    """Live pool per option and the indicative multiplier ``total_pool / option_pool``."""
    return stakes.event_odds(db, event_id)


@app.post("/events/{event_id}/stake", response_model=StakeResponse, status_code=status.HTTP_201_CREATED)
def place_stake(event_id: int, request: StakeRequest, db: Session = Depends(get_db)):
    participant = stakes.place_stake(db, event_id, request.user_id, request.prediction, request.amount)
    balance = db.query(User.points).filter(User.id == request.user_id).scalar()
    return StakeResponse(
        id=participant.id,
        event_id=participant.event_id,
        user_id=participant.user_id,
        prediction=participant.prediction,
        amount=participant.amount,
        new_balance=balance,
    )


@app.get("/api/leaderboard")
def get_leaderboard(
    page: Optional[str] = Query("1"),
    limit: Optional[str] = Query("20"),
    db: Session = Depends(get_db),
):
    """Users ranked by points. Bad or out-of-range paging values are clamped."""
    return leaderboard.get_leaderboard(db, page, limit)


@app.post(
    "/admin/events",
    response_model=EventResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_admin)],
)
def create_event(request: EventCreateRequest, db: Session = Depends(get_db)):
    return admin.create_event(
        db,
        title=request.title,
        options=[opt.model_dump() for opt in request.options],
        end_time=request.end_time,
        start_time=request.start_time,
        description=request.description,
        category=request.category,
        min_bet=request.min_bet,
        max_bet=request.max_bet,
        fee_rate=request.fee_rate,
        pot_enabled=request.pot_enabled,
    )


@app.get("/admin/events/pending", response_model=List[EventResponse], dependencies=[Depends(verify_admin)])
def list_pending_resolution(db: Session = Depends(get_db)):
    return lifecycle.list_pending_resolution(db)


@app.post("/admin/events/{event_id}/lock", response_model=EventResponse, dependencies=[Depends(verify_admin)])
def lock_event(event_id: int, db: Session = Depends(get_db)):
    return lifecycle.lock_event(db, event_id)


@app.post("/admin/events/{event_id}/cancel", dependencies=[Depends(verify_admin)])
def cancel_event(event_id: int, db: Session = Depends(get_db)):
    """Cancel an event and refund every stake in full."""
    return lifecycle.cancel_event(db, event_id)


@app.post("/admin/events/{event_id}/resolve", response_model=ResolveResponse, dependencies=[Depends(verify_admin)])
def resolve_event(event_id: int, request: ResolveRequest, db: Session = Depends(get_db)):
    """Settle an event with its correct answer.

    Resolving an event twice is harmless: the second call reports
    ``already_resolved`` and changes nothing.
    """
    try:
        result = settlement.resolve_event(db, event_id, request.correct_answer, request.final_price)
    except AlreadyResolved as exc:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"detail": exc.detail, "already_resolved": True},
        )
    return ResolveResponse(**result.as_dict())


@app.get("/admin/events/{event_id}/participants", dependencies=[Depends(verify_admin)])
def get_event_participants(event_id: int, db: Session = Depends(get_db)):
    return {"event_id": event_id, "participants": admin.event_participants(db, event_id)}


@app.get("/admin/fees", dependencies=[Depends(verify_admin)])
def get_platform_fees(db: Session = Depends(get_db)):
    return {"total_platform_fees": admin.total_platform_fees(db)}


@app.post("/admin/fees/transfer", dependencies=[Depends(verify_admin)])
def transfer_platform_fees(request: FeeTransferRequest, db: Session = Depends(get_db)):
    return admin.transfer_platform_fees(db, request.user_id, request.amount)


@app.get("/admin/metrics", dependencies=[Depends(verify_admin)])
def get_metrics(db: Session = Depends(get_db)):
    metrics = admin.get_metrics(db)
    metrics["generated_at"] = datetime.now(timezone.utc).isoformat()
    return metrics


@app.get("/admin/users", response_model=UserPage, dependencies=[Depends(verify_admin)])
def list_users(
    page: Optional[str] = Query("1"),
    limit: Optional[str] = Query("20"),
    search: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    return admin.list_users(db, page, limit, search)


@app.get("/admin/users/{user_id}", response_model=AdminUserDetail, dependencies=[Depends(verify_admin)])
def get_user_details(user_id: int, db: Session = Depends(get_db)):
    return admin.get_user_details(db, user_id)


@app.patch("/admin/users/{user_id}/points", dependencies=[Depends(verify_admin)])
def adjust_user_points(user_id: int, request: PointsAdjustRequest, db: Session = Depends(get_db)):
    """Credit (positive) or debit (negative) a user; the reason lands in their history."""
    return admin.adjust_user_points(db, user_id, request.points, request.reason)


@app.patch("/admin/users/{user_id}/role", response_model=AdminUserResponse, dependencies=[Depends(verify_admin)])
def update_user_role(user_id: int, request: RoleRequest, db: Session = Depends(get_db)):
    return admin.set_user_role(db, user_id, request.is_admin)


@app.patch("/admin/users/{user_id}/suspend", response_model=AdminUserResponse, dependencies=[Depends(verify_admin)])
def suspend_user(user_id: int, request: SuspendRequest, db: Session = Depends(get_db)):
    return admin.set_user_suspended(db, user_id, request.is_suspended)
