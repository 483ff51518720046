"""Celery task for retrying history checks that are pending or failed."""

import logging

from carmarket.celery_app import app
from carmarket.config.settings import get_settings
from carmarket.database.db import SessionLocal
from carmarket.database.models import Car
from carmarket.services.reconciliation import DuplicateRegistrationError, ReconcileOptions
from carmarket.services.update_protocol import ConcurrentModificationError, apply_update

logger = logging.getLogger(__name__)


@app.task(bind=True, max_retries=1, default_retry_delay=600)
def refresh_pending_history(self, limit: int | None = None):
    """Force-refresh enrichment for listings whose history check never succeeded.

    Each listing goes through the normal versioned update, so seller edits made
    in the meantime are respected.
    """
    limit = limit or get_settings().history_refresh_batch_size
    db = SessionLocal()
    try:
        cars = (
            db.query(Car.id, Car.version)
            .filter(
                Car.registration.isnot(None),
                Car.history_check_status.in_(["pending", "failed"]),
                Car.status.notin_(["sold", "expired", "removed"]),
            )
            .order_by(Car.updated_at)
            .limit(limit)
            .all()
        )

        verified = 0
        failed = 0
        for car_id, version in cars:
            try:
                car = apply_update(db, car_id, version, {}, ReconcileOptions(force_refresh=True))
            except ConcurrentModificationError:
                failed += 1
                logger.warning("Listing %d kept changing during history refresh, skipping", car_id)
                continue
            except DuplicateRegistrationError as exc:
                failed += 1
                db.rollback()
                logger.warning("Listing %d not refreshed: %s", car_id, exc)
                continue
            if car.history_check_status == "verified":
                verified += 1
            else:
                failed += 1

        logger.info("History refresh: %d verified, %d still failing out of %d", verified, failed, len(cars))
        return {"verified": verified, "failed": failed, "total": len(cars)}
    except Exception as exc:
        logger.exception("History refresh task failed")
        raise self.retry(exc=exc)
    finally:
        db.close()
