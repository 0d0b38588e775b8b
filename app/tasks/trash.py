import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services.trash import trash

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.trash.sweep_expired_trash")
def sweep_expired_trash() -> dict[str, int]:
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        summary = trash.sweep_expired(session)
        if summary.failed_count:
            status = "partial"
        logger.info("trash_sweep_job summary=%s", summary.as_dict())
        return summary.as_dict()
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("trash_sweep", status, time.monotonic() - start)
