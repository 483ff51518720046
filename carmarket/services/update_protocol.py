"""
Versioned listing updates.

Each write is conditional on the version the change was computed against.
When another writer got there first the listing is reloaded, the change is
recomputed on the fresh state (protection rules included) and the write is
tried again, up to a fixed number of attempts.
"""

import logging
import time

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from carmarket.config.settings import get_settings
from carmarket.database.models import Car
from carmarket.database.repository import CarRepository
from carmarket.services.enrichment_service import EnrichmentResult, EnrichmentService
from carmarket.services.reconciliation import (
    MIRRORED_FIELDS,
    ListingNotFoundError,
    ReconcileOptions,
    apply_client_fields,
    clean_client_fields,
    merge_candidate,
    reconcile,
    record_history,
    resolve_status,
)

logger = logging.getLogger(__name__)


class ConcurrentModificationError(Exception):
    """The listing kept changing underneath the update; the caller should reload and retry."""

    def __init__(self, car_id: int, attempts: int):
        super().__init__(f"Listing {car_id} was modified concurrently ({attempts} attempts)")
        self.car_id = car_id
        self.attempts = attempts


def _changes(before: dict, after: dict) -> dict:
    return {name: value for name, value in after.items() if name != "version" and before.get(name) != value}


def _mirror_to_history(repo: CarRepository, car: Car, changes: dict) -> None:
    """Best effort: copy mirrored fields to the linked history record."""
    if car.history_check_id is None or not any(name in changes for name in MIRRORED_FIELDS):
        return
    values = {name: getattr(car, name) for name in MIRRORED_FIELDS}
    try:
        repo.update_history_mirror(car.history_check_id, values)
    except SQLAlchemyError:
        repo.db.rollback()
        logger.exception("Could not mirror listing %d onto history record %d", car.id, car.history_check_id)


def apply_update(
    db: Session,
    car_id: int,
    expected_version: int,
    fields: dict,
    options: ReconcileOptions | None = None,
    service: EnrichmentService | None = None,
    max_attempts: int | None = None,
    backoff: float | None = None,
    sleep=time.sleep,
) -> Car:
    """Apply a partial update to a listing under optimistic concurrency.

    Raises ListingNotFoundError, InvalidFieldError, InvalidStatusTransition,
    DuplicateRegistrationError, or ConcurrentModificationError once every
    attempt has lost the version race.
    """
    settings = get_settings()
    options = options or ReconcileOptions()
    max_attempts = max_attempts or settings.update_max_attempts
    backoff = settings.update_backoff_seconds if backoff is None else backoff

    repo = CarRepository(db)
    fields = clean_client_fields(fields)
    requested_status = fields.get("status")

    car = repo.get(car_id)
    if car is None:
        raise ListingNotFoundError(f"Listing {car_id} not found")

    # Enrichment runs once; the merge and history row are redone per attempt
    enrichment: EnrichmentResult | None = None
    enrichment_failed = False
    if options.force_refresh and not options.skip_enrichment:
        registration = fields.get("registration") or car.registration
        if registration:
            preview = car.to_dict()
            apply_client_fields(preview, fields)
            enrichment = reconcile(preview, registration, options, service, explicit=fields)
            enrichment_failed = enrichment is None

    version = expected_version
    for attempt in range(1, max_attempts + 1):
        if attempt > 1:
            car = repo.get(car_id)
            if car is None:
                raise ListingNotFoundError(f"Listing {car_id} not found")
            version = car.version

        before = car.to_dict()
        state = dict(before, user_edited_fields=list(before["user_edited_fields"]))
        apply_client_fields(state, fields)
        if enrichment is not None:
            state.update(merge_candidate(state, enrichment.candidate, explicit=fields))
        elif enrichment_failed:
            state["history_check_status"] = "failed"
        resolve_status(repo, state, requested_status)
        if enrichment is not None:
            # Rolled back with the listing write if this attempt loses
            state["history_check_id"] = record_history(repo, enrichment, state).id

        changes = _changes(before, state)
        matched = repo.conditional_update(car_id, version, changes)
        if matched:
            db.commit()
            car = repo.get(car_id)
            logger.info("Updated listing %d to version %d (%d fields)", car_id, car.version, len(changes))
            _mirror_to_history(repo, car, changes)
            return car

        db.rollback()
        logger.warning(
            "Version conflict updating listing %d at version %d (attempt %d/%d)",
            car_id, version, attempt, max_attempts,
        )
        if attempt < max_attempts:
            sleep(backoff * attempt)

    raise ConcurrentModificationError(car_id, max_attempts)


def change_status(
    db: Session,
    car_id: int,
    expected_version: int,
    target: str,
    sleep=time.sleep,
) -> Car:
    """Explicit status change (publish, mark sold, remove) through the versioned write."""
    return apply_update(
        db,
        car_id,
        expected_version,
        {"status": target},
        ReconcileOptions(skip_enrichment=True),
        sleep=sleep,
    )
