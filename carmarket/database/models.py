from datetime import datetime, date
from sqlalchemy import String, Float, Integer, Boolean, DateTime, Date, Text, Index, ForeignKey, JSON, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class VehicleHistory(Base):
    """One history check result for a registration. Old checks are kept for audit."""
    __tablename__ = "vehicle_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vrm: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    check_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # None means the provider did not report the flag (partial parse)
    has_accident_history: Mapped[bool | None] = mapped_column(Boolean)
    is_written_off: Mapped[bool | None] = mapped_column(Boolean)
    write_off_category: Mapped[str | None] = mapped_column(String(20))
    write_off_details: Mapped[dict | None] = mapped_column(JSON)
    accident_details: Mapped[dict | None] = mapped_column(JSON)
    is_stolen: Mapped[bool | None] = mapped_column(Boolean)
    stolen_details: Mapped[dict | None] = mapped_column(JSON)
    has_outstanding_finance: Mapped[bool | None] = mapped_column(Boolean)
    finance_details: Mapped[dict | None] = mapped_column(JSON)
    is_scrapped: Mapped[bool | None] = mapped_column(Boolean)
    is_imported: Mapped[bool | None] = mapped_column(Boolean)
    is_exported: Mapped[bool | None] = mapped_column(Boolean)
    previous_owners: Mapped[int | None] = mapped_column(Integer)
    v5c_certificate_count: Mapped[int | None] = mapped_column(Integer)
    keeper_changes: Mapped[list | None] = mapped_column(JSON)

    check_status: Mapped[str] = mapped_column(String(20), default="success")  # success, partial, failed
    api_provider: Mapped[str | None] = mapped_column(String(50))
    test_mode: Mapped[bool] = mapped_column(Boolean, default=False)

    # Mirrored from the listing after each successful listing write
    service_history: Mapped[str | None] = mapped_column(String(50))
    mot_due: Mapped[date | None] = mapped_column(Date)
    seats: Mapped[int | None] = mapped_column(Integer)
    fuel_type: Mapped[str | None] = mapped_column(String(20))
    mot_history: Mapped[list | None] = mapped_column(JSON)

    __table_args__ = (
        Index("ix_vehicle_history_vrm_date", "vrm", "check_date"),
    )


class Car(Base):
    """A vehicle listing."""
    __tablename__ = "cars"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    registration: Mapped[str | None] = mapped_column(String(16), index=True)

    # Descriptive
    make: Mapped[str | None] = mapped_column(String(50))
    model: Mapped[str | None] = mapped_column(String(100))
    variant: Mapped[str | None] = mapped_column(String(100))
    year: Mapped[int | None] = mapped_column(Integer)
    color: Mapped[str | None] = mapped_column(String(50))
    fuel_type: Mapped[str | None] = mapped_column(String(20))  # Petrol, Diesel, Electric, Hybrid
    transmission: Mapped[str | None] = mapped_column(String(20))  # manual, automatic, semi-automatic
    body_type: Mapped[str | None] = mapped_column(String(50))
    doors: Mapped[int | None] = mapped_column(Integer)
    seats: Mapped[int | None] = mapped_column(Integer)
    engine_size: Mapped[float | None] = mapped_column(Float)  # litres
    mileage: Mapped[int | None] = mapped_column(Integer)

    # Commercial
    price: Mapped[float | None] = mapped_column(Float)
    estimated_value: Mapped[float | None] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(20), default="draft", index=True)
    images: Mapped[list | None] = mapped_column(JSON, default=list)
    seller_contact: Mapped[dict | None] = mapped_column(JSON)  # {email, phone, postcode}
    published_at: Mapped[datetime | None] = mapped_column(DateTime)
    sold_at: Mapped[datetime | None] = mapped_column(DateTime)

    # Running costs
    urban_mpg: Mapped[float | None] = mapped_column(Float)
    extra_urban_mpg: Mapped[float | None] = mapped_column(Float)
    combined_mpg: Mapped[float | None] = mapped_column(Float)
    co2_emissions: Mapped[float | None] = mapped_column(Float)
    insurance_group: Mapped[str | None] = mapped_column(String(10))
    annual_tax: Mapped[float | None] = mapped_column(Float)

    # Electric vehicle specs
    electric_range: Mapped[int | None] = mapped_column(Integer)  # miles
    battery_capacity: Mapped[float | None] = mapped_column(Float)  # kWh
    charging_time: Mapped[float | None] = mapped_column(Float)  # hours, home 0-100%
    home_charging_speed: Mapped[float | None] = mapped_column(Float)  # kW
    rapid_charging_speed: Mapped[float | None] = mapped_column(Float)  # kW
    charging_time_10_to_80: Mapped[int | None] = mapped_column(Integer)  # minutes
    electric_motor_power: Mapped[int | None] = mapped_column(Integer)  # kW
    electric_motor_torque: Mapped[int | None] = mapped_column(Integer)  # Nm
    charging_port_type: Mapped[str | None] = mapped_column(String(50))

    # MOT
    mot_status: Mapped[str | None] = mapped_column(String(20))
    mot_due: Mapped[date | None] = mapped_column(Date)
    mot_expiry: Mapped[date | None] = mapped_column(Date)
    mot_history: Mapped[list | None] = mapped_column(JSON)
    mot_history_updated_at: Mapped[datetime | None] = mapped_column(DateTime)

    # History check
    history_check_status: Mapped[str] = mapped_column(String(20), default="not_required")
    history_check_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("vehicle_history.id"))
    history_check_date: Mapped[datetime | None] = mapped_column(DateTime)
    previous_owners: Mapped[int | None] = mapped_column(Integer)
    is_written_off: Mapped[bool | None] = mapped_column(Boolean)
    write_off_category: Mapped[str | None] = mapped_column(String(20))
    is_stolen: Mapped[bool | None] = mapped_column(Boolean)
    has_outstanding_finance: Mapped[bool | None] = mapped_column(Boolean)
    service_history: Mapped[str | None] = mapped_column(String(50))

    description: Mapped[str | None] = mapped_column(Text)

    # Field names the seller edited by hand; enrichment never overwrites these
    user_edited_fields: Mapped[list] = mapped_column(JSON, default=list)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("ix_cars_registration_status", "registration", "status"),
        # At most one active listing per registration
        Index(
            "uq_cars_active_registration", "registration", unique=True,
            sqlite_where=text("status = 'active'"), postgresql_where=text("status = 'active'"),
        ),
    )

    @classmethod
    def column_names(cls) -> set[str]:
        return {column.key for column in cls.__table__.columns}

    @property
    def running_costs(self) -> dict:
        return {
            "fuel_economy": {
                "urban": self.urban_mpg,
                "extra_urban": self.extra_urban_mpg,
                "combined": self.combined_mpg,
            },
            "co2_emissions": self.co2_emissions,
            "insurance_group": self.insurance_group,
            "annual_tax": self.annual_tax,
        }

    def to_dict(self) -> dict:
        """Plain snapshot of every column, used as the working state for merges."""
        data = {}
        for name in self.column_names():
            value = getattr(self, name)
            if isinstance(value, list):
                value = list(value)
            elif isinstance(value, dict):
                value = dict(value)
            data[name] = value
        if data.get("user_edited_fields") is None:
            data["user_edited_fields"] = []
        return data
