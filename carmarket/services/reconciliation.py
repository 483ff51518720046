"""
Listing reconciliation: the status lifecycle, merging enrichment data into a
listing, and listing creation/deletion.

Everything here works on the plain dict snapshot from Car.to_dict() so a
merge can be recomputed against fresh state without touching ORM objects.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Date, DateTime
from sqlalchemy.orm import Session

from carmarket.database.models import Car, VehicleHistory
from carmarket.database.repository import CarRepository, DuplicateRegistrationError
from carmarket.services.enrichment_service import EnrichmentResult, EnrichmentService
from carmarket.services.history_client import HistoryApiError
from carmarket.services.history_parser import parse_date
from carmarket.services.protection_policy import PROTECTED_FIELDS, filter_candidate, mark_user_edited

logger = logging.getLogger(__name__)

STATUSES = ("draft", "incomplete", "pending_payment", "active", "sold", "expired", "removed")
TERMINAL_STATUSES = frozenset({"sold", "expired", "removed"})

ALLOWED_TRANSITIONS: dict[str, frozenset] = {
    "draft": frozenset({"incomplete", "pending_payment", "active", "removed"}),
    "incomplete": frozenset({"pending_payment", "active", "removed"}),
    "pending_payment": frozenset({"active", "removed"}),
    "active": frozenset({"sold", "expired", "removed"}),
    "sold": frozenset(),
    "expired": frozenset(),
    "removed": frozenset(),
}

# Never accepted from clients; silently dropped
SYSTEM_FIELDS = frozenset({"id", "version", "created_at", "updated_at"})
# Maintained by the system; a client supplying them is an error
READ_ONLY_FIELDS = frozenset({"user_edited_fields", "history_check_id"})

# Copied onto the linked history record after listing writes
MIRRORED_FIELDS = ("service_history", "mot_due", "seats", "fuel_type")


class ListingNotFoundError(Exception):
    pass


class InvalidFieldError(ValueError):
    """Request named a field that does not exist or cannot be written."""


class InvalidStatusTransition(Exception):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move listing from {current} to {target}")
        self.current = current
        self.target = target


@dataclass
class ReconcileOptions:
    skip_enrichment: bool = False
    force_refresh: bool = False
    mileage: int | None = None


# --- field hygiene ---

def normalize_registration(value) -> str | None:
    if value is None:
        return None
    text = "".join(str(value).split()).upper()
    return text or None


def _coerce(name: str, value):
    """Turn ISO strings from JSON requests into date/datetime for temporal columns."""
    if not isinstance(value, str):
        return value
    column_type = Car.__table__.columns[name].type
    if isinstance(column_type, DateTime):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
        except ValueError as exc:
            raise InvalidFieldError(f"{name} must be an ISO datetime") from exc
    if isinstance(column_type, Date):
        parsed = parse_date(value)
        if parsed is None:
            raise InvalidFieldError(f"{name} must be a date")
        return parsed
    return value


def clean_client_fields(fields: dict) -> dict:
    """Drop system-managed keys and reject anything that is not a writable column."""
    allowed = Car.column_names() - SYSTEM_FIELDS - READ_ONLY_FIELDS
    cleaned = {}
    for name, value in fields.items():
        if name in SYSTEM_FIELDS:
            continue
        if name not in allowed:
            raise InvalidFieldError(f"Unknown or read-only field: {name}")
        cleaned[name] = _coerce(name, value)
    if "registration" in cleaned:
        cleaned["registration"] = normalize_registration(cleaned["registration"])
    if "status" in cleaned and cleaned["status"] not in STATUSES:
        raise InvalidFieldError(f"Unknown status: {cleaned['status']}")
    return cleaned


def apply_client_fields(state: dict, fields: dict) -> None:
    """Seller-supplied values go straight in; protected ones are remembered as user edits."""
    for name, value in fields.items():
        if name == "status":
            continue
        state[name] = value
        if name in PROTECTED_FIELDS:
            mark_user_edited(state, name)


# --- status lifecycle ---

def can_transition(current: str, target: str) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(state: dict, target: str) -> None:
    current = state.get("status") or "draft"
    if not can_transition(current, target):
        raise InvalidStatusTransition(current, target)
    if current == target:
        return
    state["status"] = target
    now = datetime.utcnow()
    if target == "active" and not state.get("published_at"):
        state["published_at"] = now
    elif target == "sold":
        state["sold_at"] = now


def is_publishable(state: dict) -> bool:
    contact = state.get("seller_contact") or {}
    return bool(
        (state.get("price") or 0) > 0
        and state.get("images")
        and contact.get("email")
        and contact.get("phone")
    )


def _partly_filled(state: dict) -> bool:
    contact = state.get("seller_contact") or {}
    return bool(
        (state.get("price") or 0) > 0
        or state.get("images")
        or contact.get("email")
        or contact.get("phone")
    )


def next_status(state: dict) -> str:
    """Status the listing should auto-advance to. Never moves backwards."""
    current = state.get("status") or "draft"
    if current in ("draft", "incomplete") and is_publishable(state):
        return "active"
    if current == "draft" and _partly_filled(state):
        return "incomplete"
    return current


def resolve_status(repo: CarRepository, state: dict, requested: str | None = None) -> None:
    """Apply an explicit status change, then auto-advance, then enforce one active listing per registration."""
    if requested is not None:
        transition(state, requested)
    target = next_status(state)
    if target != state.get("status"):
        transition(state, target)

    registration = state.get("registration")
    if state.get("status") == "active" and registration:
        existing = repo.find_active_by_registration(registration, exclude_id=state.get("id"))
        if existing is not None:
            raise DuplicateRegistrationError(registration, existing.id)


# --- enrichment ---

def reconcile(
    state: dict,
    registration: str,
    options: ReconcileOptions | None = None,
    service: EnrichmentService | None = None,
    explicit=(),
) -> EnrichmentResult | None:
    """Enrich the snapshot in place. Returns None when the history check failed.

    A failed check marks the snapshot history_check_status=failed and never
    raises, so the surrounding write still goes ahead. Fields named in
    ``explicit`` were supplied by the seller in this request and are kept.
    """
    options = options or ReconcileOptions()
    service = service or EnrichmentService()
    hints = {name: state.get(name) for name in ("make", "model", "variant", "fuel_type")}
    hints["user_edited_fields"] = list(state.get("user_edited_fields") or [])
    try:
        result = service.enrich(registration, mileage=options.mileage, hints=hints)
    except HistoryApiError as exc:
        logger.warning(
            "Enrichment failed for %s (status=%s, daily_limit=%s): %s",
            registration, exc.status_code, exc.is_daily_limit, exc,
        )
        state["history_check_status"] = "failed"
        state["history_check_date"] = datetime.utcnow()
        return None

    state.update(merge_candidate(state, result.candidate, explicit))
    return result


def merge_candidate(state: dict, candidate: dict, explicit=()) -> dict:
    """Candidate fields that pass the protection policy against this state.

    Fields in ``explicit`` were written by the seller in the same request and
    always win over the candidate.
    """
    columns = Car.column_names()
    # The check outcome always comes from the check that just ran
    explicit = set(explicit) - {"history_check_status"}
    return filter_candidate(
        state, {k: v for k, v in candidate.items() if k in columns and k not in explicit}
    )


def record_history(repo: CarRepository, result: EnrichmentResult, state: dict) -> VehicleHistory:
    """Add a history row for this check to the current transaction.

    The row is only flushed, so it is committed or discarded together with
    the listing write. Earlier rows are left in place.
    """
    values = result.history.to_record_fields()
    values["vrm"] = values.get("vrm") or result.registration
    if result.mot is not None and not result.mot.is_mock:
        values["mot_history"] = [test.to_dict() for test in result.mot.tests]
    for name in MIRRORED_FIELDS:
        values[name] = state.get(name)
    return repo.add_history(VehicleHistory(**values))


# --- create / delete ---

def create_listing(
    db: Session,
    data: dict,
    options: ReconcileOptions | None = None,
    service: EnrichmentService | None = None,
) -> Car:
    options = options or ReconcileOptions()
    repo = CarRepository(db)
    fields = clean_client_fields(data)

    state = {"status": "draft", "user_edited_fields": [], "images": []}
    apply_client_fields(state, fields)
    registration = state.get("registration")
    if "history_check_status" not in fields:
        state["history_check_status"] = "pending" if registration else "not_required"

    result = None
    if registration and state["history_check_status"] == "pending" and not options.skip_enrichment:
        result = reconcile(state, registration, options, service, explicit=fields)

    resolve_status(repo, state, fields.get("status"))

    if result is not None:
        state["history_check_id"] = record_history(repo, result, state).id
    car = repo.add(Car(**state))
    logger.info(
        "Created listing %d (%s) status=%s history=%s",
        car.id, car.registration, car.status, car.history_check_status,
    )
    return car


def delete_listing(db: Session, car_id: int) -> None:
    """Delete a listing and the history record linked to it."""
    repo = CarRepository(db)
    car = repo.get(car_id)
    if car is None:
        raise ListingNotFoundError(f"Listing {car_id} not found")

    history_id = car.history_check_id
    repo.delete(car)
    db.flush()
    if history_id is not None:
        history = repo.get_history(history_id)
        if history is not None:
            db.delete(history)
    db.commit()
    logger.info("Deleted listing %d (history record %s)", car_id, history_id)
