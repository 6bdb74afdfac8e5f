# Overview: Service-layer operations for appointment dose reservations.

# backend/vaxstock/services/reservation_service.py

from __future__ import annotations

from ..extensions import db
from ..models import Child, ChildVaccination, StockLot, StockReservation
from ..models.people import VACCINATION_SCHEDULED
from ..owners import Owner
from ..time_utils import today, parse_iso_date
from .concurrency import lock_for_update
from .lot_service import (
    InsufficientStockError,
    LotError,
    available_quantity,
    credit_lot,
    debit_lot,
    list_valid_lots,
    recompute_aggregate,
    require_positive_int,
)
"""
Reservation Invariants (authoritative)

- A SCHEDULED vaccination holds at most one StockReservation (unique schedule_id).
- The reserved doses are already debited from the lot; the lot's quantity is
  what is still free. Physical doses on the shelf = lot.quantity + reserved.
- Only health-center lots are reserved against.
- Releasing a reservation credits the same lot and recomputes the aggregate.
"""


class ReservationError(LotError):
    """Raised when a reservation cannot be made or released."""
    http_status = 409


def reserve_dose(
    health_center_id: int,
    vaccine_id: int,
    schedule_id: int,
    *,
    appointment_date=None,
    quantity: int = 1,
) -> StockReservation:
    """
    Set aside doses at a health center for one scheduled appointment.

    Picks the closest-expiry lot holding enough doses that is still valid on
    the appointment date (today when not given).

    Raises:
        ReservationError: the schedule already holds a reservation
        InsufficientStockError: no lot qualifies
    """
    require_positive_int(quantity)
    owner = Owner.health_center(health_center_id)
    on_date = parse_iso_date(appointment_date) if appointment_date is not None else today()
    on_date = max(on_date, today())

    existing = db.session.query(StockReservation).filter_by(schedule_id=schedule_id).first()
    if existing is not None:
        raise ReservationError(f"Appointment {schedule_id} already holds a reservation")

    lots = list_valid_lots(owner, vaccine_id, as_of=on_date, lock=True)
    lot = next((candidate for candidate in lots if candidate.quantity >= quantity), None)
    if lot is None:
        raise InsufficientStockError(
            quantity, available_quantity(owner, vaccine_id, as_of=on_date), owner, vaccine_id
        )

    debit_lot(lot, quantity)
    reservation = StockReservation(schedule_id=schedule_id, stock_lot_id=lot.id, quantity=quantity)
    db.session.add(reservation)
    db.session.flush()

    recompute_aggregate(owner, vaccine_id)
    return reservation


def release_reservation(reservation: StockReservation) -> StockLot | None:
    """Give a reservation's doses back to its lot and drop the reservation."""
    lot = lock_for_update(
        db.session.query(StockLot).filter_by(id=reservation.stock_lot_id)
    ).first()

    db.session.delete(reservation)
    if lot is None:
        db.session.flush()
        return None

    credit_lot(lot, reservation.quantity)
    db.session.flush()
    recompute_aggregate(lot.owner, lot.vaccine_id)
    return lot


def release_for_schedule(schedule_id: int) -> StockReservation | None:
    reservation = db.session.query(StockReservation).filter_by(schedule_id=schedule_id).first()
    if reservation is None:
        return None
    release_reservation(reservation)
    return reservation


def refresh_next_appointment(child_id: int) -> None:
    """Point the child at its earliest remaining SCHEDULED vaccination."""
    child = db.session.get(Child, child_id)
    if child is None:
        return
    upcoming = (
        db.session.query(ChildVaccination)
        .filter(
            ChildVaccination.child_id == child_id,
            ChildVaccination.status == VACCINATION_SCHEDULED,
        )
        .order_by(ChildVaccination.scheduled_for.asc(), ChildVaccination.id.asc())
        .first()
    )
    child.next_appointment_at = upcoming.scheduled_for if upcoming else None
    child.next_vaccine_id = upcoming.vaccine_id if upcoming else None


def cancel_appointments(schedule_ids) -> list[dict]:
    """
    Cancel SCHEDULED vaccinations: release their doses, delete the records
    and refresh each child's next appointment.

    Returns one summary dict per cancelled appointment.
    """
    ids = list(dict.fromkeys(schedule_ids))
    if not ids:
        return []

    appointments = (
        db.session.query(ChildVaccination)
        .filter(
            ChildVaccination.id.in_(ids),
            ChildVaccination.status == VACCINATION_SCHEDULED,
        )
        .order_by(ChildVaccination.id.asc())
        .all()
    )

    cancelled = []
    children = set()
    for appointment in appointments:
        release_for_schedule(appointment.id)
        cancelled.append({
            "schedule_id": appointment.id,
            "child_id": appointment.child_id,
            "vaccine_id": appointment.vaccine_id,
            "scheduled_for": appointment.scheduled_for.isoformat() if appointment.scheduled_for else None,
        })
        children.add(appointment.child_id)
        db.session.delete(appointment)

    db.session.flush()
    for child_id in sorted(children):
        refresh_next_appointment(child_id)
    db.session.flush()
    return cancelled


def reserved_appointments_for_lot(lot_id: int) -> list[tuple[StockReservation, ChildVaccination]]:
    """Reservations on a lot with their appointments, latest appointment first."""
    return (
        db.session.query(StockReservation, ChildVaccination)
        .join(ChildVaccination, ChildVaccination.id == StockReservation.schedule_id)
        .filter(StockReservation.stock_lot_id == lot_id)
        .order_by(ChildVaccination.scheduled_for.desc(), ChildVaccination.id.desc())
        .all()
    )

