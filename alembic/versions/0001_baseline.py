"""Baseline: listings and vehicle history checks.

Revision ID: 0001
Revises: None
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "vehicle_history",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("vrm", sa.String(16), nullable=False, index=True),
        sa.Column("check_date", sa.DateTime()),
        sa.Column("has_accident_history", sa.Boolean()),
        sa.Column("is_written_off", sa.Boolean()),
        sa.Column("write_off_category", sa.String(20)),
        sa.Column("write_off_details", sa.JSON()),
        sa.Column("accident_details", sa.JSON()),
        sa.Column("is_stolen", sa.Boolean()),
        sa.Column("stolen_details", sa.JSON()),
        sa.Column("has_outstanding_finance", sa.Boolean()),
        sa.Column("finance_details", sa.JSON()),
        sa.Column("is_scrapped", sa.Boolean()),
        sa.Column("is_imported", sa.Boolean()),
        sa.Column("is_exported", sa.Boolean()),
        sa.Column("previous_owners", sa.Integer()),
        sa.Column("v5c_certificate_count", sa.Integer()),
        sa.Column("keeper_changes", sa.JSON()),
        sa.Column("check_status", sa.String(20)),
        sa.Column("api_provider", sa.String(50)),
        sa.Column("test_mode", sa.Boolean()),
        sa.Column("service_history", sa.String(50)),
        sa.Column("mot_due", sa.Date()),
        sa.Column("seats", sa.Integer()),
        sa.Column("fuel_type", sa.String(20)),
        sa.Column("mot_history", sa.JSON()),
    )
    op.create_index("ix_vehicle_history_vrm_date", "vehicle_history", ["vrm", "check_date"])

    op.create_table(
        "cars",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("registration", sa.String(16), index=True),
        sa.Column("make", sa.String(50)),
        sa.Column("model", sa.String(100)),
        sa.Column("variant", sa.String(100)),
        sa.Column("year", sa.Integer()),
        sa.Column("color", sa.String(50)),
        sa.Column("fuel_type", sa.String(20)),
        sa.Column("transmission", sa.String(20)),
        sa.Column("body_type", sa.String(50)),
        sa.Column("doors", sa.Integer()),
        sa.Column("seats", sa.Integer()),
        sa.Column("engine_size", sa.Float()),
        sa.Column("mileage", sa.Integer()),
        sa.Column("price", sa.Float()),
        sa.Column("estimated_value", sa.Float()),
        sa.Column("status", sa.String(20), index=True),
        sa.Column("images", sa.JSON()),
        sa.Column("seller_contact", sa.JSON()),
        sa.Column("published_at", sa.DateTime()),
        sa.Column("sold_at", sa.DateTime()),
        sa.Column("urban_mpg", sa.Float()),
        sa.Column("extra_urban_mpg", sa.Float()),
        sa.Column("combined_mpg", sa.Float()),
        sa.Column("co2_emissions", sa.Float()),
        sa.Column("insurance_group", sa.String(10)),
        sa.Column("annual_tax", sa.Float()),
        sa.Column("electric_range", sa.Integer()),
        sa.Column("battery_capacity", sa.Float()),
        sa.Column("charging_time", sa.Float()),
        sa.Column("home_charging_speed", sa.Float()),
        sa.Column("rapid_charging_speed", sa.Float()),
        sa.Column("charging_time_10_to_80", sa.Integer()),
        sa.Column("electric_motor_power", sa.Integer()),
        sa.Column("electric_motor_torque", sa.Integer()),
        sa.Column("charging_port_type", sa.String(50)),
        sa.Column("mot_status", sa.String(20)),
        sa.Column("mot_due", sa.Date()),
        sa.Column("mot_expiry", sa.Date()),
        sa.Column("mot_history", sa.JSON()),
        sa.Column("mot_history_updated_at", sa.DateTime()),
        sa.Column("history_check_status", sa.String(20)),
        sa.Column("history_check_id", sa.Integer(), sa.ForeignKey("vehicle_history.id")),
        sa.Column("history_check_date", sa.DateTime()),
        sa.Column("previous_owners", sa.Integer()),
        sa.Column("is_written_off", sa.Boolean()),
        sa.Column("write_off_category", sa.String(20)),
        sa.Column("is_stolen", sa.Boolean()),
        sa.Column("has_outstanding_finance", sa.Boolean()),
        sa.Column("service_history", sa.String(50)),
        sa.Column("description", sa.Text()),
        sa.Column("user_edited_fields", sa.JSON()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime()),
        sa.Column("updated_at", sa.DateTime()),
    )
    op.create_index("ix_cars_registration_status", "cars", ["registration", "status"])
    op.create_index(
        "uq_cars_active_registration", "cars", ["registration"], unique=True,
        sqlite_where=sa.text("status = 'active'"), postgresql_where=sa.text("status = 'active'"),
    )


def downgrade() -> None:
    op.drop_index("uq_cars_active_registration", table_name="cars")
    op.drop_index("ix_cars_registration_status", table_name="cars")
    op.drop_table("cars")
    op.drop_index("ix_vehicle_history_vrm_date", table_name="vehicle_history")
    op.drop_table("vehicle_history")
