from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from carmarket.database.db import get_db
from carmarket.database.models import Car
from carmarket.database.repository import CarRepository
from carmarket.services.reconciliation import (
    DuplicateRegistrationError,
    InvalidFieldError,
    InvalidStatusTransition,
    ListingNotFoundError,
    ReconcileOptions,
    create_listing,
    delete_listing,
)
from carmarket.services.update_protocol import ConcurrentModificationError, apply_update, change_status

router = APIRouter()


# --- Request/Response Models ---

class CreateListingRequest(BaseModel):
    fields: dict[str, Any] = Field(default_factory=dict)
    skip_enrichment: bool = False
    mileage: int | None = Field(None, ge=0, le=1_000_000)


class UpdateListingRequest(BaseModel):
    version: int = Field(..., ge=1)
    fields: dict[str, Any] = Field(default_factory=dict)
    force_refresh: bool = False
    mileage: int | None = Field(None, ge=0, le=1_000_000)


class StatusRequest(BaseModel):
    version: int = Field(..., ge=1)
    status: str = Field(..., min_length=1, max_length=20)


def _serialize(car: Car) -> dict:
    data = {}
    for name, value in car.to_dict().items():
        if isinstance(value, (date, datetime)):
            value = value.isoformat()
        data[name] = value
    data["running_costs"] = car.running_costs
    return data


_STATUS_CODES = {
    ListingNotFoundError: 404,
    InvalidFieldError: 400,
    InvalidStatusTransition: 409,
    DuplicateRegistrationError: 409,
    ConcurrentModificationError: 409,
}
_HANDLED = tuple(_STATUS_CODES)


def _error(exc: Exception) -> HTTPException:
    if isinstance(exc, ConcurrentModificationError):
        return HTTPException(status_code=409, detail="Listing was modified by someone else, please retry")
    return HTTPException(status_code=_STATUS_CODES[type(exc)], detail=str(exc))


# --- Endpoints ---

@router.post("/listings", status_code=201)
def create_listing_endpoint(req: CreateListingRequest, db: Session = Depends(get_db)):
    """Create a listing; enriches from the registration unless skip_enrichment is set."""
    options = ReconcileOptions(skip_enrichment=req.skip_enrichment, mileage=req.mileage)
    try:
        car = create_listing(db, req.fields, options)
    except _HANDLED as exc:
        raise _error(exc)
    return _serialize(car)


@router.get("/listings/{car_id}")
def get_listing(car_id: int, db: Session = Depends(get_db)):
    car = CarRepository(db).get(car_id)
    if car is None:
        raise HTTPException(status_code=404, detail=f"Listing {car_id} not found")
    return _serialize(car)


@router.patch("/listings/{car_id}")
def update_listing(car_id: int, req: UpdateListingRequest, db: Session = Depends(get_db)):
    """Partial update at a known version. force_refresh re-runs enrichment."""
    options = ReconcileOptions(force_refresh=req.force_refresh, mileage=req.mileage)
    try:
        car = apply_update(db, car_id, req.version, req.fields, options)
    except _HANDLED as exc:
        raise _error(exc)
    return _serialize(car)


@router.post("/listings/{car_id}/status")
def update_status(car_id: int, req: StatusRequest, db: Session = Depends(get_db)):
    try:
        car = change_status(db, car_id, req.version, req.status)
    except _HANDLED as exc:
        raise _error(exc)
    return _serialize(car)


@router.delete("/listings/{car_id}", status_code=204)
def delete_listing_endpoint(car_id: int, db: Session = Depends(get_db)):
    try:
        delete_listing(db, car_id)
    except ListingNotFoundError as exc:
        raise _error(exc)
