"""Leaderboard: users ranked by points."""

import math

from sqlalchemy.orm import Session

from potmarket.logger import get_logger
from potmarket.models import User

logger = get_logger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 100


def _to_int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def normalize_page(page, limit):
    """Clamp query parameters the way the leaderboard has always accepted them."""
    page = _to_int(page, 1)
    limit = _to_int(limit, DEFAULT_LIMIT)
    if page < 1:
        page = 1
    if limit < 1:
        limit = DEFAULT_LIMIT
    if limit > MAX_LIMIT:
        limit = MAX_LIMIT
    return page, limit


def get_leaderboard(db: Session, page=1, limit=DEFAULT_LIMIT) -> dict:
    """Return one page of ``{id, username, points}`` ordered by points.

    Ties keep registration order. A page past the end yields an empty
    ``users`` list rather than an error.
    """
    page, limit = normalize_page(page, limit)
    offset = (page - 1) * limit

    rows = (
        db.query(User.id, User.username, User.points)
        .order_by(User.points.desc(), User.id.asc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    total = db.query(User).count()
    logger.debug("Leaderboard page=%d limit=%d returned %d of %d users", page, limit, len(rows), total)

    return {
        "users": [{"id": r.id, "username": r.username, "points": r.points} for r in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit),
    }
