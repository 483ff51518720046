"""
Field-level rules for merging enrichment data into a listing.

Seller edits always win over provider data, and provider data never blanks
out a value the listing already has. Records may be Car instances or the
plain dict snapshots produced by Car.to_dict().
"""

from collections.abc import Mapping

from carmarket.database.models import Car

# Fields the update path marks as user-edited whenever a request supplies them
PROTECTED_FIELDS = frozenset({"mot_due", "mot_expiry", "color", "seats", "service_history", "fuel_type"})


def _get(record, name: str):
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def is_empty(value) -> bool:
    """None, blank strings and empty containers. False and 0 are real values."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def user_edited_fields(record) -> list[str]:
    return list(_get(record, "user_edited_fields") or [])


def should_apply(record, field: str, candidate_value) -> bool:
    if field in user_edited_fields(record):
        return False
    if not is_empty(_get(record, field)) and is_empty(candidate_value):
        return False
    return True


def filter_candidate(record, candidate: dict) -> dict:
    """The part of a candidate that may be written to the record."""
    return {name: value for name, value in candidate.items() if should_apply(record, name, value)}


def mark_user_edited(record, field: str) -> None:
    if field not in Car.column_names():
        raise ValueError(f"Unknown listing field: {field}")
    edited = user_edited_fields(record)
    if field in edited:
        return
    edited.append(field)
    if isinstance(record, Mapping):
        record["user_edited_fields"] = edited
    else:
        # Reassign so SQLAlchemy sees the JSON column change
        record.user_edited_fields = edited
