"""
Builds a candidate set of listing fields for a registration from the history
provider, MOT history and the EV spec table.

The candidate is only a proposal. Whether each field lands on the listing is
decided by protection_policy during reconciliation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from carmarket.config.ev_specs import EV_FIELDS, GENERIC_EV_DEFAULTS, lookup_ev_spec
from carmarket.services.history_client import HistoryApiClient, MotHistoryResult
from carmarket.services.history_parser import (
    HistoryCheckResult,
    derive_mot_status,
    normalize_fuel_type,
    parse_vehicle_details,
    validate_history_response,
)

logger = logging.getLogger(__name__)

MOT_FIELDS = ("mot_history", "mot_history_updated_at", "mot_status", "mot_due", "mot_expiry")


@dataclass
class EnrichmentResult:
    registration: str
    candidate: dict = field(default_factory=dict)
    history: HistoryCheckResult | None = None
    mot: MotHistoryResult | None = None
    # Where EV specs came from: "api", "table", "default", or None for non-EVs
    ev_provenance: str | None = None


def resolve_fuel_type(candidate: dict, hints: dict | None = None) -> str | None:
    """Fuel type the listing will end up with once the merge has run.

    A seller-edited fuel type in the hints beats the provider's, the same way
    the protection policy keeps it during the merge.
    """
    hints = hints or {}
    hinted = normalize_fuel_type(hints.get("fuel_type"))
    if hinted and "fuel_type" in (hints.get("user_edited_fields") or ()):
        return hinted
    return candidate.get("fuel_type") or hinted


def apply_ev_defaults(candidate: dict, hints: dict | None = None) -> str | None:
    """Fill missing EV fields for electric vehicles. Returns the provenance."""
    hints = hints or {}
    fuel_type = resolve_fuel_type(candidate, hints)

    if fuel_type != "Electric":
        if fuel_type != "Hybrid":
            for name in EV_FIELDS:
                candidate.pop(name, None)
        return None

    make = candidate.get("make") or hints.get("make")
    model = candidate.get("model") or hints.get("model")
    variant = candidate.get("variant") or hints.get("variant")

    from_api = candidate.get("electric_range") is not None and candidate.get("battery_capacity") is not None
    spec = lookup_ev_spec(make, model, variant)
    if from_api:
        provenance = "api"
    elif spec is not None:
        provenance = "table"
    else:
        provenance = "default"
    if spec is None:
        spec = dict(GENERIC_EV_DEFAULTS)
        logger.info("No EV specs for %s %s %s, using generic defaults", make, model, variant)

    for name in EV_FIELDS:
        if candidate.get(name) is None:
            candidate[name] = spec[name]

    candidate["co2_emissions"] = 0
    candidate["annual_tax"] = 0
    return provenance


def _history_fields(history: HistoryCheckResult) -> dict:
    valid, missing = validate_history_response(history)
    if not valid:
        logger.warning("History result for %s missing %s", history.vrm, ", ".join(missing))
        if history.check_status == "success":
            history.check_status = "partial"
    fields = {
        "history_check_status": "verified" if valid else "failed",
        "history_check_date": history.check_date,
        "previous_owners": history.previous_owners,
        "is_written_off": history.is_written_off,
        "write_off_category": history.write_off_category,
        "is_stolen": history.is_stolen,
        "has_outstanding_finance": history.has_outstanding_finance,
    }
    return {key: value for key, value in fields.items() if value is not None}


def _mot_fields(mot: MotHistoryResult) -> dict:
    if mot.is_mock or not mot.tests:
        return {}
    fields = {
        "mot_history": [test.to_dict() for test in mot.tests],
        "mot_history_updated_at": datetime.utcnow(),
    }
    fields.update({key: value for key, value in derive_mot_status(mot.tests).items() if value is not None})
    return fields


def _mot_mileage(mot: MotHistoryResult) -> int | None:
    if mot.is_mock or not mot.tests:
        return None
    latest = mot.tests[0]
    if latest.odometer_value is None:
        return None
    if latest.odometer_unit == "km":
        return round(latest.odometer_value * 0.621371)
    return latest.odometer_value


class EnrichmentService:
    def __init__(self, client: HistoryApiClient | None = None):
        self.client = client or HistoryApiClient.from_settings()

    def enrich(self, registration: str, mileage: int | None = None, hints: dict | None = None) -> EnrichmentResult:
        """Fetch and merge external data for a registration.

        Raises HistoryApiError when the history check itself fails. MOT
        failures never raise; the client degrades to mock data, which is
        returned on the result but kept out of the candidate.
        """
        history = self.client.check_history(registration)
        candidate = parse_vehicle_details(history.raw)
        candidate.update(_history_fields(history))

        mot = self.client.get_mot_history(registration)
        candidate.update(_mot_fields(mot))

        if mileage is not None:
            candidate["mileage"] = mileage
        else:
            mot_mileage = _mot_mileage(mot)
            if mot_mileage is not None:
                candidate["mileage"] = mot_mileage

        provenance = apply_ev_defaults(candidate, hints)
        logger.info(
            "Enriched %s: %d candidate fields, history=%s, mot=%s, ev=%s",
            history.vrm, len(candidate), history.check_status, mot.source, provenance,
        )
        return EnrichmentResult(
            registration=history.vrm or registration,
            candidate=candidate,
            history=history,
            mot=mot,
            ev_provenance=provenance,
        )
