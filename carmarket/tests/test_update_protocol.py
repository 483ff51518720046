"""Tests for versioned listing updates under concurrent writers."""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from carmarket.database.models import Base, Car, VehicleHistory
from carmarket.database.repository import CarRepository
from carmarket.services.enrichment_service import EnrichmentResult, EnrichmentService
from carmarket.services.history_client import HistoryApiClient, HistoryApiError, MotHistoryResult
from carmarket.services.history_parser import parse_history_response
from carmarket.services.reconciliation import (
    DuplicateRegistrationError,
    InvalidFieldError,
    InvalidStatusTransition,
    ListingNotFoundError,
    ReconcileOptions,
)
from carmarket.services.update_protocol import ConcurrentModificationError, apply_update, change_status


@pytest.fixture
def test_session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    return TestSession


@pytest.fixture
def db(test_session):
    session = test_session()
    yield session
    session.close()


@pytest.fixture
def sleeps():
    return []


def _car(db, **fields) -> Car:
    values = {"registration": "AB12CDE", "status": "draft", "history_check_status": "pending", "user_edited_fields": []}
    values.update(fields)
    car = Car(**values)
    db.add(car)
    db.commit()
    db.refresh(car)
    return car


def _service(candidate=None, error=None):
    service = MagicMock(spec=EnrichmentService)
    if error is not None:
        service.enrich.side_effect = error
    else:
        history = parse_history_response({"VehicleRegistration": {"Vrm": "AB12CDE"}, "VehicleHistory": {}})
        service.enrich.return_value = EnrichmentResult(
            registration="AB12CDE",
            candidate=candidate or {},
            history=history,
            mot=MotHistoryResult("AB12CDE", [], "checkcardetails"),
        )
    return service


class TestVersioning:

    def test_increments_version(self, db, sleeps):
        car = _car(db)

        updated = apply_update(db, car.id, 1, {"price": 5000}, sleep=sleeps.append)

        assert updated.version == 2
        assert updated.price == 5000
        assert sleeps == []

    def test_concurrent_updates_at_same_version(self, db, sleeps):
        car = _car(db, version=5)

        first = apply_update(db, car.id, 5, {"mileage": 42000}, sleep=sleeps.append)
        second = apply_update(db, car.id, 5, {"description": "One owner"}, sleep=sleeps.append)

        assert first.version == 6
        assert second.version == 7
        assert second.mileage == 42000
        assert second.description == "One owner"
        assert sleeps == [0.1]

    def test_conflict_exhaustion(self, db, sleeps):
        car = _car(db)

        with patch.object(CarRepository, "conditional_update", return_value=0) as mock_update:
            with pytest.raises(ConcurrentModificationError) as exc_info:
                apply_update(db, car.id, 1, {"price": 100}, sleep=sleeps.append)

        assert mock_update.call_count == 3
        assert sleeps == pytest.approx([0.1, 0.2])
        assert exc_info.value.attempts == 3
        assert db.get(Car, car.id).version == 1

    def test_conflict_exhaustion_leaves_no_history(self, db, sleeps):
        car = _car(db)

        with patch.object(CarRepository, "conditional_update", return_value=0):
            with pytest.raises(ConcurrentModificationError):
                apply_update(
                    db, car.id, 1, {}, ReconcileOptions(force_refresh=True),
                    service=_service({"make": "FORD"}), sleep=sleeps.append,
                )

        assert db.query(VehicleHistory).count() == 0
        assert db.get(Car, car.id).history_check_id is None

    def test_retry_links_history_from_winning_attempt(self, db, sleeps):
        car = _car(db, version=3)
        apply_update(db, car.id, 3, {"price": 1}, sleep=sleeps.append)

        updated = apply_update(
            db, car.id, 3, {}, ReconcileOptions(force_refresh=True),
            service=_service({"make": "FORD"}), sleep=sleeps.append,
        )

        assert db.query(VehicleHistory).count() == 1
        assert db.get(VehicleHistory, updated.history_check_id) is not None

    def test_retry_recomputes_against_fresh_state(self, db, sleeps):
        car = _car(db, version=3)
        # another writer gets in first
        apply_update(db, car.id, 3, {"color": "Green"}, sleep=sleeps.append)

        service = _service({"color": "Blue", "seats": 5})
        updated = apply_update(
            db, car.id, 3, {}, ReconcileOptions(force_refresh=True), service=service, sleep=sleeps.append,
        )

        # the concurrent writer's edit is now a user edit and survives the refresh
        assert updated.version == 5
        assert updated.color == "Green"
        assert updated.seats == 5
        service.enrich.assert_called_once()

    def test_system_fields_stripped(self, db, sleeps):
        car = _car(db)

        updated = apply_update(db, car.id, 1, {"id": 99, "version": 50, "price": 1}, sleep=sleeps.append)

        assert updated.id == car.id
        assert updated.version == 2

    def test_unknown_field_rejected(self, db):
        car = _car(db)
        with pytest.raises(InvalidFieldError):
            apply_update(db, car.id, 1, {"colour": "Red"})

    def test_missing_listing(self, db):
        with pytest.raises(ListingNotFoundError):
            apply_update(db, 404, 1, {"price": 1})


class TestProtection:

    def test_protected_fields_marked_user_edited(self, db, sleeps):
        car = _car(db)

        updated = apply_update(db, car.id, 1, {"color": "Red", "seats": 4, "price": 900}, sleep=sleeps.append)

        assert sorted(updated.user_edited_fields) == ["color", "seats"]

    def test_refresh_does_not_overwrite_user_edits(self, db, sleeps):
        car = _car(db, color="Red", user_edited_fields=["color"], variant="Zetec")
        service = _service({"color": "Blue", "variant": None, "make": "FORD", "history_check_status": "verified"})

        updated = apply_update(
            db, car.id, 1, {}, ReconcileOptions(force_refresh=True), service=service, sleep=sleeps.append,
        )

        assert updated.color == "Red"
        assert updated.variant == "Zetec"
        assert updated.make == "FORD"
        assert updated.history_check_status == "verified"
        assert updated.history_check_id is not None

    def test_refresh_keeps_fields_sent_with_it(self, db, sleeps):
        car = _car(db, make="FORD")
        service = _service({"make": "FORD", "model": "Astra"})

        updated = apply_update(
            db, car.id, 1, {"make": "VAUXHALL"}, ReconcileOptions(force_refresh=True),
            service=service, sleep=sleeps.append,
        )

        assert updated.make == "VAUXHALL"
        assert updated.model == "Astra"

    def test_refresh_respects_seller_petrol_over_provider_electric(self, db, sleeps):
        car = _car(db, fuel_type="Petrol", user_edited_fields=["fuel_type"])
        client = MagicMock(spec=HistoryApiClient)
        client.check_history.return_value = parse_history_response({
            "VehicleRegistration": {"Vrm": "AB12CDE", "Make": "TESLA", "Model": "Model Y", "FuelType": "ELECTRICITY"},
            "VehicleHistory": {},
        })
        client.get_mot_history.return_value = MotHistoryResult("AB12CDE", [], "checkcardetails")

        updated = apply_update(
            db, car.id, 1, {}, ReconcileOptions(force_refresh=True),
            service=EnrichmentService(client), sleep=sleeps.append,
        )

        assert updated.fuel_type == "Petrol"
        assert updated.electric_range is None
        assert updated.battery_capacity is None
        assert updated.annual_tax is None

    def test_no_enrichment_without_force_refresh(self, db, sleeps):
        car = _car(db)
        service = _service({"make": "FORD"})

        apply_update(db, car.id, 1, {"price": 1}, service=service, sleep=sleeps.append)

        service.enrich.assert_not_called()

    def test_refresh_failure_marks_failed(self, db, sleeps):
        car = _car(db)

        updated = apply_update(
            db, car.id, 1, {"price": 10}, ReconcileOptions(force_refresh=True),
            service=_service(error=HistoryApiError("down")), sleep=sleeps.append,
        )

        assert updated.history_check_status == "failed"
        assert updated.price == 10
        assert updated.version == 2


class TestStatus:

    def test_auto_activates_when_publishable(self, db, sleeps):
        car = _car(db, price=9995, images=["https://img.test/1.jpg"])

        updated = apply_update(
            db, car.id, 1,
            {"seller_contact": {"email": "s@example.com", "phone": "07700900000", "postcode": "LS1 1AA"}},
            sleep=sleeps.append,
        )

        assert updated.status == "active"

    def test_invalid_transition(self, db):
        car = _car(db, status="active")
        with pytest.raises(InvalidStatusTransition):
            change_status(db, car.id, 1, "incomplete")

    def test_mark_sold(self, db, sleeps):
        car = _car(db, status="active")

        updated = change_status(db, car.id, 1, "sold", sleep=sleeps.append)

        assert updated.status == "sold"
        assert updated.sold_at is not None

    def test_duplicate_on_activation(self, db):
        _car(db, status="active")
        car = _car(db, status="pending_payment")

        with pytest.raises(DuplicateRegistrationError):
            change_status(db, car.id, 1, "active")

    def test_store_rejects_second_active_listing(self, db):
        first = _car(db, status="active")
        racer = _car(db, status="pending_payment")

        # both writers passed the pre-write check; the index stops the second
        with pytest.raises(DuplicateRegistrationError) as exc_info:
            CarRepository(db).conditional_update(racer.id, 1, {"status": "active"})

        assert exc_info.value.existing_id == first.id
        assert db.get(Car, racer.id).status == "pending_payment"

    def test_store_rejects_inserting_second_active_listing(self, db):
        first = _car(db, status="active")

        with pytest.raises(DuplicateRegistrationError) as exc_info:
            CarRepository(db).add(Car(registration="AB12CDE", status="active", user_edited_fields=[]))

        assert exc_info.value.existing_id == first.id

    def test_store_allows_inactive_duplicates(self, db):
        _car(db, status="active")
        _car(db, status="draft")
        _car(db, status="sold")

        assert db.query(Car).count() == 3


class TestHistoryMirror:

    def test_mirrors_fields(self, db, sleeps):
        history = CarRepository(db).add_history(VehicleHistory(vrm="AB12CDE"))
        car = _car(db, history_check_id=history.id)

        apply_update(db, car.id, 1, {"service_history": "Full", "seats": 5}, sleep=sleeps.append)

        db.expire_all()
        mirrored = db.get(VehicleHistory, history.id)
        assert mirrored.service_history == "Full"
        assert mirrored.seats == 5

    def test_mirror_failure_swallowed(self, db, sleeps, caplog):
        history = CarRepository(db).add_history(VehicleHistory(vrm="AB12CDE"))
        car = _car(db, history_check_id=history.id)

        with patch.object(CarRepository, "update_history_mirror", side_effect=SQLAlchemyError("locked")):
            updated = apply_update(db, car.id, 1, {"fuel_type": "Diesel"}, sleep=sleeps.append)

        assert updated.version == 2
        assert updated.fuel_type == "Diesel"
        assert "Could not mirror" in caplog.text
