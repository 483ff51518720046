"""Celery tasks that delete abandoned listings and unreferenced history records."""

import logging
from datetime import datetime, timedelta

from sqlalchemy import select

from carmarket.celery_app import app
from carmarket.config.settings import get_settings
from carmarket.database.db import SessionLocal
from carmarket.database.models import Car, VehicleHistory
from carmarket.services.reconciliation import ListingNotFoundError, delete_listing

logger = logging.getLogger(__name__)


@app.task(bind=True, max_retries=2, default_retry_delay=300)
def cleanup_pending_payment_listings(self):
    """Delete listings left in pending_payment past the configured TTL."""
    cutoff = datetime.utcnow() - timedelta(hours=get_settings().pending_payment_ttl_hours)
    db = SessionLocal()
    try:
        stale_ids = [
            car_id
            for (car_id,) in db.query(Car.id)
            .filter(Car.status == "pending_payment", Car.created_at < cutoff)
            .all()
        ]
        deleted = 0
        for car_id in stale_ids:
            try:
                delete_listing(db, car_id)
                deleted += 1
            except ListingNotFoundError:
                # Already removed by another worker
                continue

        logger.info("Pending payment cleanup: deleted %d listings older than %s", deleted, cutoff)
        return {"deleted": deleted}
    except Exception as exc:
        logger.exception("Pending payment cleanup failed")
        db.rollback()
        raise self.retry(exc=exc)
    finally:
        db.close()


@app.task(bind=True, max_retries=2, default_retry_delay=300)
def cleanup_stale_history(self):
    """Delete old history records that no listing points at."""
    cutoff = datetime.utcnow() - timedelta(days=get_settings().stale_history_days)
    db = SessionLocal()
    try:
        referenced = select(Car.history_check_id).where(Car.history_check_id.isnot(None))
        deleted = (
            db.query(VehicleHistory)
            .filter(VehicleHistory.check_date < cutoff, VehicleHistory.id.notin_(referenced))
            .delete(synchronize_session=False)
        )
        db.commit()

        logger.info("Stale history cleanup: deleted %d records older than %s", deleted, cutoff)
        return {"deleted": deleted}
    except Exception as exc:
        logger.exception("Stale history cleanup failed")
        db.rollback()
        raise self.retry(exc=exc)
    finally:
        db.close()
