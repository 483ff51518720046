"""
Parsers for the vehicle history provider and both MOT history shapes.

The history payload carries two sections, VehicleRegistration and
VehicleHistory. Every nested lookup tolerates missing keys; a container that
is present but of the wrong type raises HistoryParseError so callers can fall
back to handle_partial_response().
"""

import logging
import re
from dataclasses import dataclass, field, asdict
from datetime import date, datetime

from carmarket.services.field_unwrapper import best_of, deep_unwrap, extract_number, extract_string, get_path

logger = logging.getLogger(__name__)

PROVIDER_NAME = "CheckCarDetails"

REQUIRED_HISTORY_FIELDS = ("vrm", "has_accident_history", "is_stolen", "has_outstanding_finance")

_CATEGORY_PATTERN = re.compile(r"\bCAT(?:EGORY)?\s+([ABCDNS])\b")

_DATE_FORMATS = ("%Y-%m-%d", "%Y.%m.%d", "%Y.%m.%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S", "%d/%m/%Y")


class HistoryParseError(Exception):
    """Payload had a section of an unexpected type."""


@dataclass
class HistoryCheckResult:
    vrm: str | None
    check_date: datetime = field(default_factory=datetime.utcnow)
    has_accident_history: bool | None = None
    is_written_off: bool | None = None
    write_off_category: str | None = None
    write_off_details: dict | None = None
    accident_details: dict | None = None
    is_stolen: bool | None = None
    stolen_details: dict | None = None
    has_outstanding_finance: bool | None = None
    finance_details: dict | None = None
    is_scrapped: bool | None = None
    is_imported: bool | None = None
    is_exported: bool | None = None
    previous_owners: int | None = None
    v5c_certificate_count: int | None = None
    keeper_changes: list = field(default_factory=list)
    check_status: str = "success"
    api_provider: str | None = PROVIDER_NAME
    test_mode: bool = False
    # Raw provider payload, kept for vehicle detail extraction
    raw: dict | None = field(default=None, repr=False, compare=False)

    def to_record_fields(self) -> dict:
        """Column values for a VehicleHistory row."""
        data = asdict(self)
        data.pop("raw", None)
        return data


@dataclass
class MotDefect:
    type: str
    text: str
    dangerous: bool = False


@dataclass
class MotTestRecord:
    test_date: date
    test_result: str
    expiry_date: date | None = None
    odometer_value: int | None = None
    odometer_unit: str | None = None
    test_number: str | None = None
    defects: list[MotDefect] = field(default_factory=list)
    advisory_text: list[str] = field(default_factory=list)
    test_station: dict | None = None

    def to_dict(self) -> dict:
        """JSON-safe form stored in Car.mot_history."""
        return {
            "test_date": self.test_date.isoformat(),
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "test_result": self.test_result,
            "odometer_value": self.odometer_value,
            "odometer_unit": self.odometer_unit,
            "test_number": self.test_number,
            "defects": [asdict(defect) for defect in self.defects],
            "advisory_text": list(self.advisory_text),
            "test_station": self.test_station,
        }


def parse_date(value) -> date | None:
    """Parse the date formats the providers use. Unknown formats give None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _section(payload: dict, key: str) -> dict:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise HistoryParseError(f"{key} should be an object, got {type(value).__name__}")
    return value


def _detail(section: dict, key: str) -> dict | None:
    """A detail object; list-valued details use their first entry."""
    value = section.get(key)
    if value is None or value is False:
        return None
    if isinstance(value, list):
        value = value[0] if value else None
        if value is None:
            return None
    if value is True:
        return {}
    if not isinstance(value, dict):
        raise HistoryParseError(f"VehicleHistory.{key} should be an object, got {type(value).__name__}")
    return value


def _write_off_category(detail: dict) -> str:
    category = extract_string(detail.get("category"))
    if category:
        return category.upper()
    status = extract_string(detail.get("status"))
    if status:
        match = _CATEGORY_PATTERN.search(status.upper())
        if match:
            return match.group(1)
    return "unknown"


def _int_or_none(value) -> int | None:
    number = extract_number(value)
    return int(number) if number is not None else None


def parse_history_response(payload, test_mode: bool = False) -> HistoryCheckResult:
    if not isinstance(payload, dict):
        raise HistoryParseError(f"history payload should be an object, got {type(payload).__name__}")

    registration = _section(payload, "VehicleRegistration")
    history = _section(payload, "VehicleHistory")

    vrm = extract_string(best_of(registration.get("Vrm"), payload.get("registrationNumber"), payload.get("vrm")))

    writeoff = _detail(history, "writeoff")
    stolen = _detail(history, "stolen")
    finance = _detail(history, "finance")

    has_write_off = bool(history.get("writeOffRecord")) or writeoff is not None
    is_stolen = bool(history.get("stolenRecord")) or stolen is not None
    has_finance = bool(history.get("financeRecord")) or finance is not None

    result = HistoryCheckResult(
        vrm=vrm.upper() if vrm else None,
        has_accident_history=has_write_off,
        is_written_off=has_write_off,
        is_stolen=is_stolen,
        has_outstanding_finance=has_finance,
        is_scrapped=bool(registration.get("Scrapped")),
        is_imported=bool(registration.get("Imported") or registration.get("ImportNonEu")),
        is_exported=bool(registration.get("Exported")),
        previous_owners=_int_or_none(
            best_of(
                history.get("NumberOfPreviousKeepers"),
                history.get("numberOfPreviousKeepers"),
                history.get("PreviousKeepers"),
            )
        ) or 0,
        v5c_certificate_count=_int_or_none(history.get("V5CCertificateCount")) or 0,
        test_mode=test_mode,
        raw=payload,
    )

    if has_write_off:
        detail = writeoff or {}
        category = _write_off_category(detail)
        loss_date = parse_date(detail.get("lossdate"))
        result.write_off_category = category
        result.write_off_details = {
            "category": category,
            "status": extract_string(detail.get("status")),
            "loss_date": loss_date.isoformat() if loss_date else None,
        }
        result.accident_details = {
            "count": 1,
            "severity": category,
            "dates": [loss_date.isoformat()] if loss_date else [],
        }
        logger.info("Write-off detected for %s: category %s", result.vrm, category)
    else:
        result.write_off_category = "none"
        result.write_off_details = {"category": "none", "status": None, "loss_date": None}
        result.accident_details = {"count": 0, "severity": "unknown", "dates": []}

    if stolen is not None:
        reported = parse_date(stolen.get("date"))
        result.stolen_details = {
            "reported_date": reported.isoformat() if reported else None,
            "status": extract_string(stolen.get("status")) or "active",
        }

    if finance is not None:
        result.finance_details = {
            "amount": extract_number(finance.get("amount")) or 0,
            "lender": extract_string(finance.get("lender")) or "Unknown",
            "type": extract_string(finance.get("type")) or "unknown",
        }

    keepers = history.get("KeeperChangesList") or []
    if not isinstance(keepers, list):
        raise HistoryParseError("VehicleHistory.KeeperChangesList should be a list")
    for change in keepers:
        if not isinstance(change, dict):
            continue
        changed_on = parse_date(change.get("DateOfTransaction"))
        result.keeper_changes.append({
            "date": changed_on.isoformat() if changed_on else None,
            "keeper_count": _int_or_none(change.get("NumberOfPreviousKeepers")) or 0,
        })

    return result


def handle_partial_response(payload, test_mode: bool = False) -> HistoryCheckResult:
    """Keep only the top-level flags that can be read with confidence."""
    data = payload if isinstance(payload, dict) else {}

    def flag(name):
        value = data.get(name)
        return value if isinstance(value, bool) else None

    vrm = extract_string(data.get("vrm"))
    result = HistoryCheckResult(
        vrm=vrm.upper() if vrm else None,
        has_accident_history=flag("hasAccidentHistory"),
        is_written_off=flag("isWrittenOff"),
        is_stolen=flag("isStolen"),
        has_outstanding_finance=flag("hasOutstandingFinance"),
        check_status="partial",
        api_provider=extract_string(data.get("provider")) or "unknown",
        test_mode=test_mode,
        raw=data,
    )
    if result.is_written_off is False:
        result.write_off_category = "none"
    elif result.is_written_off:
        result.write_off_category = "unknown"

    missing = [name for name in REQUIRED_HISTORY_FIELDS if getattr(result, name) is None]
    logger.warning(
        "Partial history response for %s; unavailable fields: %s",
        result.vrm or "unknown", ", ".join(missing) or "none",
    )
    return result


def parse_history_payload(payload, test_mode: bool = False) -> HistoryCheckResult:
    """Full parse, degrading to a partial parse on malformed payloads."""
    try:
        return parse_history_response(payload, test_mode)
    except HistoryParseError as exc:
        logger.warning("History payload could not be fully parsed: %s", exc)
        return handle_partial_response(payload, test_mode)


def validate_history_response(result: HistoryCheckResult) -> tuple[bool, list[str]]:
    missing = [name for name in REQUIRED_HISTORY_FIELDS if getattr(result, name) is None]
    return not missing, missing


# --- vehicle details ---

def normalize_fuel_type(value) -> str | None:
    text = extract_string(value)
    if not text:
        return None
    upper = text.upper()
    if "HYBRID" in upper or "PHEV" in upper or "MHEV" in upper:
        return "Hybrid"
    if "ELECTRIC" in upper or upper in ("EV", "BEV"):
        return "Electric"
    if "DIESEL" in upper:
        return "Diesel"
    if "PETROL" in upper or "GASOLINE" in upper:
        return "Petrol"
    return text.title()


def normalize_transmission(value) -> str | None:
    text = extract_string(value)
    if not text:
        return None
    lower = text.lower()
    if "semi" in lower:
        return "semi-automatic"
    if "auto" in lower or lower in ("cvt", "dct", "dsg"):
        return "automatic"
    if "manual" in lower:
        return "manual"
    return None


def normalize_engine_size(value) -> float | None:
    """Litres, converting cc values (anything over 50)."""
    number = extract_number(value)
    if number is None or number <= 0:
        return None
    if number > 50:
        return round(number / 1000, 1)
    return round(float(number), 1)


def normalize_color(value) -> str | None:
    text = extract_string(value)
    return text.title() if text else None


def _model(registration: dict, smmt: dict) -> str | None:
    for candidate in (registration.get("Model"), smmt.get("ModelVariant"), smmt.get("Series")):
        text = extract_string(candidate)
        if text and text.lower() != "unknown":
            return text
    return None


def _unwrapped_section(payload: dict, key: str) -> dict:
    """A provider section with any {value, source} envelopes removed; {} if missing."""
    section = deep_unwrap(payload.get(key))
    return section if isinstance(section, dict) else {}


def parse_vehicle_details(payload) -> dict:
    """Descriptive, running cost and EV fields from a history payload, keyed by Car column."""
    if not isinstance(payload, dict):
        return {}
    registration = _unwrapped_section(payload, "VehicleRegistration")
    smmt = _unwrapped_section(payload, "SmmtDetails")
    costs = _unwrapped_section(payload, "runningCosts")
    ev = _unwrapped_section(payload, "ElectricVehicleData")

    make = extract_string(best_of(registration.get("Make"), smmt.get("Marque")))
    details = {
        "make": make.upper() if make else None,
        "model": _model(registration, smmt),
        "variant": extract_string(best_of(payload.get("variant"), smmt.get("Trim"))),
        "year": _int_or_none(best_of(registration.get("YearOfManufacture"), payload.get("year"))),
        "color": normalize_color(best_of(registration.get("Colour"), payload.get("colour"))),
        "fuel_type": normalize_fuel_type(best_of(registration.get("FuelType"), smmt.get("FuelType"))),
        "transmission": normalize_transmission(
            best_of(registration.get("Transmission"), registration.get("TransmissionType"), smmt.get("Transmission"))
        ),
        "body_type": extract_string(best_of(smmt.get("BodyStyle"), registration.get("BodyStyle"))),
        "doors": _int_or_none(best_of(smmt.get("NumberOfDoors"), registration.get("NumberOfDoors"))),
        "seats": _int_or_none(best_of(registration.get("SeatingCapacity"), smmt.get("NumberOfSeats"))),
        "engine_size": normalize_engine_size(best_of(registration.get("EngineCapacity"), smmt.get("EngineCapacity"))),
        "urban_mpg": extract_number(best_of(get_path(costs, "fuelEconomy.urban"), smmt.get("UrbanColdMpg"))),
        "extra_urban_mpg": extract_number(best_of(get_path(costs, "fuelEconomy.extraUrban"), smmt.get("ExtraUrbanMpg"))),
        "combined_mpg": extract_number(best_of(get_path(costs, "fuelEconomy.combined"), smmt.get("CombinedMpg"))),
        "co2_emissions": extract_number(best_of(costs.get("co2Emissions"), registration.get("Co2Emissions"))),
        "insurance_group": extract_string(costs.get("insuranceGroup")),
        "annual_tax": extract_number(costs.get("annualTax")),
        "electric_range": _int_or_none(best_of(ev.get("Range"), payload.get("electricRange"))),
        "battery_capacity": extract_number(best_of(ev.get("BatteryCapacity"), payload.get("batteryCapacity"))),
        "charging_time": extract_number(best_of(ev.get("ChargingTime"), payload.get("chargingTime"))),
        "electric_motor_power": _int_or_none(best_of(ev.get("MotorPower"), payload.get("electricMotorPower"))),
        "electric_motor_torque": _int_or_none(best_of(ev.get("MotorTorque"), payload.get("electricMotorTorque"))),
        "charging_port_type": extract_string(best_of(ev.get("ChargingPortType"), payload.get("chargingPortType"))),
    }
    return {key: value for key, value in details.items() if value is not None}


# --- MOT history ---

def _odometer_unit(value) -> str | None:
    text = extract_string(value)
    if not text:
        return None
    return "mi" if text.lower() in ("mi", "miles") else "km"


def _defects(items) -> list[MotDefect]:
    if not isinstance(items, list):
        return []
    defects = []
    for item in items:
        if not isinstance(item, dict):
            continue
        defect_type = (extract_string(item.get("type")) or "ADVISORY").upper()
        defects.append(MotDefect(
            type=defect_type,
            text=extract_string(item.get("text")) or "",
            dangerous=item.get("dangerous") is True or defect_type == "DANGEROUS",
        ))
    return defects


def _mot_record(test: dict, date_key: str, number_key: str) -> MotTestRecord | None:
    test_date = parse_date(test.get(date_key))
    if test_date is None:
        return None
    defects = _defects(test.get("defects") or test.get("rfrAndComments") or [])
    result = (extract_string(best_of(test.get("testResult"), test.get("result"))) or "UNKNOWN").upper()
    if result in ("PASS", "PASSED"):
        result = "PASSED"
    elif result in ("FAIL", "FAILED"):
        result = "FAILED"
    return MotTestRecord(
        test_date=test_date,
        expiry_date=parse_date(test.get("expiryDate")) if result == "PASSED" else None,
        test_result=result,
        odometer_value=_int_or_none(test.get("odometerValue")),
        odometer_unit=_odometer_unit(test.get("odometerUnit")),
        test_number=extract_string(test.get(number_key)),
        defects=defects,
        advisory_text=[d.text for d in defects if d.type == "ADVISORY" and d.text],
        test_station={
            "name": extract_string(test.get("testStationName")),
            "number": extract_string(test.get("testStationNumber")),
            "address": extract_string(test.get("testStationAddress")),
            "postcode": extract_string(test.get("testStationPostcode")),
        },
    )


def _sorted(records: list[MotTestRecord]) -> list[MotTestRecord]:
    return sorted(records, key=lambda record: record.test_date, reverse=True)


def parse_mot_response(payload) -> list[MotTestRecord]:
    """Provider MOT shape: tests under motHistory, motTests or tests."""
    if isinstance(payload, list):
        tests = payload
    elif isinstance(payload, dict):
        tests = payload.get("tests") or payload.get("motHistory") or payload.get("motTests") or []
    else:
        raise HistoryParseError("MOT payload should be an object or list")
    if not isinstance(tests, list):
        raise HistoryParseError("MOT tests should be a list")
    records = [_mot_record(test, "testDate", "testNumber") for test in tests if isinstance(test, dict)]
    return _sorted([record for record in records if record is not None])


def parse_dvsa_mot_response(payload) -> list[MotTestRecord]:
    """Government MOT shape: a vehicle (or list of vehicles) carrying motTests."""
    vehicles = payload if isinstance(payload, list) else [payload]
    records = []
    for vehicle in vehicles:
        if not isinstance(vehicle, dict):
            raise HistoryParseError("MOT vehicle entry should be an object")
        tests = vehicle.get("motTests") or []
        if not isinstance(tests, list):
            raise HistoryParseError("motTests should be a list")
        for test in tests:
            if isinstance(test, dict):
                record = _mot_record(test, "completedDate", "motTestNumber")
                if record is not None:
                    records.append(record)
    return _sorted(records)


def derive_mot_status(records: list[MotTestRecord]) -> dict:
    """MOT status and due date from the latest test."""
    if not records:
        return {}
    latest = records[0]
    return {
        "mot_status": "Valid" if latest.test_result == "PASSED" else "Invalid",
        "mot_due": latest.expiry_date,
        "mot_expiry": latest.expiry_date,
    }
