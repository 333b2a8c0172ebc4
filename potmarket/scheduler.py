"""
Background sweep for event housekeeping.
Keeps exactly one BackgroundScheduler per process.
"""
from threading import Lock

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from potmarket import lifecycle
from potmarket.config import settings
from potmarket.database import SessionLocal
from potmarket.logger import get_logger

logger = get_logger(__name__)

SWEEP_JOB_ID = "event_sweep"

_scheduler = None
_scheduler_lock = Lock()


def run_sweep(session_factory=SessionLocal) -> dict:
    """Lock expired events and flag the ones stuck in LOCKED.

    Resolution itself needs an answer from an admin or a resolver, so the
    sweep never settles anything.
    """
    db = session_factory()
    try:
        locked = lifecycle.lock_expired_events(db)
        flagged = [event.id for event in lifecycle.flag_stale_events(db)]
        pending = len(lifecycle.list_pending_resolution(db))
    except Exception as e:
        logger.error(f"SWEEP :: Failed | Error: {e} | Type: {type(e).__name__}", exc_info=True)
        raise
    finally:
        db.close()

    logger.info(f"SWEEP :: locked={locked} flagged={len(flagged)} pending={pending}")
    return {"locked": locked, "flagged": flagged, "pending": pending}


def _create_scheduler(interval_seconds: int) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(
        executors={'default': ThreadPoolExecutor(max_workers=1)},
        job_defaults={
            'coalesce': True,           # Combine multiple pending executions
            'max_instances': 1,         # One sweep at a time
            'misfire_grace_time': 300,
        },
        timezone='UTC',
    )
    scheduler.add_job(
        run_sweep,
        trigger='interval',
        seconds=interval_seconds,
        id=SWEEP_JOB_ID,
        replace_existing=True,
    )
    return scheduler


def start_scheduler(interval_seconds: int = None) -> BackgroundScheduler:
    """Create and start the global scheduler on first call; return it afterwards."""
    global _scheduler

    if _scheduler is None:
        with _scheduler_lock:
            if _scheduler is None:
                _scheduler = _create_scheduler(interval_seconds or settings.sweep_interval_seconds)
                _scheduler.start()
                logger.info("SCHEDULER :: Started background sweep every %ss",
                            interval_seconds or settings.sweep_interval_seconds)
    return _scheduler


def is_scheduler_running() -> bool:
    return _scheduler is not None and _scheduler.running


def shutdown_scheduler() -> None:
    """Graceful scheduler shutdown"""
    global _scheduler

    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=True)
        logger.info("SCHEDULER :: Shutdown completed")
    _scheduler = None
