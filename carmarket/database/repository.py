"""Listing persistence. Callers see get/conditional_update/find, nothing SQL-specific."""

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carmarket.database.models import Car, VehicleHistory


class DuplicateRegistrationError(Exception):
    def __init__(self, registration: str, existing_id: int | None):
        super().__init__(f"Registration {registration} already has an active listing ({existing_id})")
        self.registration = registration
        self.existing_id = existing_id


class CarRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, car_id: int) -> Car | None:
        """Load a listing, always re-reading the row so retries see other writers' changes."""
        return self.db.get(Car, car_id, populate_existing=True)

    def add(self, car: Car) -> Car:
        registration = car.registration
        self.db.add(car)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self._raise_duplicate(exc, registration)
        self.db.refresh(car)
        return car

    def conditional_update(self, car_id: int, expected_version: int, values: dict) -> int:
        """Write values only if the stored version still matches. Returns rows matched (0 or 1).

        Raises DuplicateRegistrationError when the write would leave two active
        listings on one registration (enforced by uq_cars_active_registration).
        """
        try:
            result = self.db.execute(
                update(Car)
                .where(Car.id == car_id, Car.version == expected_version)
                .values(**values, version=Car.version + 1, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
        except IntegrityError as exc:
            registration = values.get("registration")
            if registration is None:
                self.db.rollback()
                current = self.get(car_id)
                registration = current.registration if current is not None else None
            self._raise_duplicate(exc, registration, exclude_id=car_id)
        return result.rowcount

    def _raise_duplicate(self, exc: IntegrityError, registration: str | None, exclude_id: int | None = None):
        self.db.rollback()
        existing = self.find_active_by_registration(registration, exclude_id) if registration else None
        if existing is None:
            raise exc
        raise DuplicateRegistrationError(registration, existing.id) from exc

    def find(self, **filters) -> list[Car]:
        query = self.db.query(Car)
        for name, value in filters.items():
            column = getattr(Car, name)
            if isinstance(value, (list, tuple, set)):
                query = query.filter(column.in_(list(value)))
            else:
                query = query.filter(column == value)
        return query.order_by(Car.id).all()

    def find_active_by_registration(self, registration: str, exclude_id: int | None = None) -> Car | None:
        query = self.db.query(Car).filter(Car.registration == registration, Car.status == "active")
        if exclude_id is not None:
            query = query.filter(Car.id != exclude_id)
        return query.first()

    def delete(self, car: Car) -> None:
        self.db.delete(car)

    # --- history records ---

    def add_history(self, history: VehicleHistory) -> VehicleHistory:
        """Flush a history row into the current transaction; the caller commits."""
        self.db.add(history)
        self.db.flush()
        return history

    def get_history(self, history_id: int) -> VehicleHistory | None:
        return self.db.get(VehicleHistory, history_id)

    def update_history_mirror(self, history_id: int, values: dict) -> None:
        self.db.execute(
            update(VehicleHistory)
            .where(VehicleHistory.id == history_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
