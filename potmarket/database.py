"""Database setup for the potmarket backend.

This module configures a SQLAlchemy engine and session factory from
``settings.database_url``. Without a ``DATABASE_URL`` in the environment the
application falls back to an SQLite file in the temp directory, which is
convenient for local development and testing.

The ``get_db`` function is provided as a FastAPI dependency to obtain a
database session for each request. Sessions are closed after the request
lifecycle.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from potmarket.config import settings


def make_engine(url: str):
    """Create an engine for ``url``.

    SQLite needs ``check_same_thread`` disabled because FastAPI and the
    background sweep use sessions from worker threads. Other backends such as
    PostgreSQL need no extra arguments.
    """
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True)


engine = make_engine(settings.database_url)

# ``autoflush`` is disabled to give explicit control over when writes happen;
# settlement relies on nothing reaching the database before its claim.
SessionLocal = sessionmaker(autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind=None):
    """Create all tables. Schema changes beyond this are applied out of band."""
    # Models must be imported so their tables are registered on ``Base``.
    from potmarket import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """Yield a database session for a single request.

    Designed to be used as a FastAPI dependency. It creates a new SQLAlchemy
    session from ``SessionLocal`` and closes it once the request is finished.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
