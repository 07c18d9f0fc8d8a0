"""
Celery worker that persists audit records dispatched by the API process.
"""
from celery import Celery
from sqlalchemy.exc import SQLAlchemyError
import logging
from .audit import write_audit_record
from .config import settings
from .database import Database

logger = logging.getLogger(__name__)

celery_app = Celery(
    "cdmo_records",
    broker=settings.CELERY_BROKER_URL,
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    timezone='UTC',
    enable_utc=True,
    task_ignore_result=True,
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
)

_database: Database | None = None


def _get_database() -> Database:
    global _database
    if _database is None:
        _database = Database.from_settings()
    return _database


@celery_app.task(name="record_audit_event")
def record_audit_event(payload: dict) -> None:
    """Persist one audit record."""
    db = _get_database().session()
    try:
        write_audit_record(db, payload)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to persist audit record action=%s", payload.get("action"))
        raise
    finally:
        db.close()
