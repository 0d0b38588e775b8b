import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services.pin_ledger import pin_ledger

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.pins.reconcile_pins")
def reconcile_pins(addresses: list[str] | None = None, repair: bool = True) -> dict:
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        report = pin_ledger.reconcile(session, addresses, repair=repair)
        drifted = [
            entry
            for entry in report
            if entry["repaired"] or entry["store_pinned"] != (entry["reference_count"] > 0)
        ]
        if drifted:
            logger.warning(
                "pin_reconcile_drift count=%s repair=%s", len(drifted), repair
            )
        return {"checked": len(report), "drifted": len(drifted), "entries": drifted}
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("pin_reconcile", status, time.monotonic() - start)
