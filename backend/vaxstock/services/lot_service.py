# Overview: Service-layer operations for stock lots; encapsulates business logic and database work.

# backend/vaxstock/services/lot_service.py

from __future__ import annotations

from datetime import date

from flask import current_app, has_app_context
from sqlalchemy import func

from ..errors import StockLedgerError, NotFoundError
from ..extensions import db
from ..models import (
    StockLot,
    AggregateStock,
    StockReservation,
    PendingStockTransferLot,
    StockTransferLot,
    Vaccine,
)
from ..models.stock import LOT_STATUS_VALID, LOT_STATUS_EXPIRED
from ..owners import Owner
from ..time_utils import today, parse_iso_date
from .concurrency import lock_for_update
from .event_log_service import append_event
from .scope_service import require_owner_exists, require_scope_covers
"""
Lot Store Invariants (authoritative)

Quantities:
- StockLot.quantity >= 0 at all times; any debit that would go negative fails.
- A zero-quantity lot is kept for audit but never allocated.
- AggregateStock.quantity == SUM(quantity) of the owner's VALID lots for the
  vaccine. Every function here that touches a lot recomputes the aggregate
  before returning, inside the caller's transaction.

Expiration:
- Lots carry a calendar expiration date. A lot is expired once
  expiration < today (UTC).
- status moves VALID -> EXPIRED only, via mark_expired(); never reversed.
- Lots past their date are excluded from allocation even before the sweep
  flips their status.

FEFO (first-expire-first-out):
- Allocation always consumes lots ordered by (expiration ASC, id ASC), so the
  closest expiry is used first and ties go to the oldest row.

Transactions:
- Nothing here commits. Callers own the transaction boundary and roll back
  on any exception.
"""


class LotError(StockLedgerError):
    """Raised when a lot operation is invalid."""
    pass


class LotNotFoundError(NotFoundError):
    pass


class VaccineNotFoundError(NotFoundError):
    pass


class InsufficientQuantityError(LotError):
    """Raised when an adjustment would drive a lot below zero."""
    http_status = 409

    def __init__(self, lot_id: int, quantity: int, delta: int):
        self.lot_id = lot_id
        self.quantity = quantity
        self.delta = delta
        super().__init__(
            f"Lot {lot_id} holds {quantity}; cannot apply delta {delta}"
        )


class InsufficientStockError(LotError):
    """Raised when valid stock cannot cover a requested quantity."""
    http_status = 409

    def __init__(self, requested: int, available: int, owner: Owner | None = None, vaccine_id: int | None = None):
        self.requested = requested
        self.available = available
        self.owner = owner
        self.vaccine_id = vaccine_id
        where = f" at {owner}" if owner is not None else ""
        super().__init__(
            f"Insufficient valid stock{where}. Available: {available}, requested: {requested}"
        )


def require_positive_int(value, field: str = "quantity") -> int:
    """Strict positive integer check (rejects bools, floats and numeric strings)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field} must be an integer")
    if value <= 0:
        raise ValueError(f"{field} must be positive")
    return value


def status_for_expiration(expiration: date, as_of: date | None = None) -> str:
    as_of = as_of or today()
    return LOT_STATUS_EXPIRED if expiration < as_of else LOT_STATUS_VALID


def require_vaccine(vaccine_id: int, *, lock: bool = False) -> Vaccine:
    query = db.session.query(Vaccine).filter_by(id=vaccine_id)
    if lock:
        query = lock_for_update(query)
    vaccine = query.first()
    if vaccine is None:
        raise VaccineNotFoundError(f"Vaccine {vaccine_id} not found")
    return vaccine


def get_lot(lot_id: int, *, lock: bool = False) -> StockLot:
    query = db.session.query(StockLot).filter_by(id=lot_id)
    if lock:
        query = lock_for_update(query)
    lot = query.first()
    if lot is None:
        raise LotNotFoundError(f"Lot {lot_id} not found")
    return lot


def _valid_lots_query(owner: Owner, vaccine_id: int, as_of: date | None = None):
    as_of = as_of or today()
    return (
        db.session.query(StockLot)
        .filter(
            StockLot.owned_by(owner),
            StockLot.vaccine_id == vaccine_id,
            StockLot.status == LOT_STATUS_VALID,
            StockLot.quantity > 0,
            StockLot.expiration >= as_of,
        )
        .order_by(StockLot.expiration.asc(), StockLot.id.asc())
    )


def list_valid_lots(owner: Owner, vaccine_id: int, *, as_of: date | None = None, lock: bool = False) -> list[StockLot]:
    """
    Allocatable lots of owner for vaccine in FEFO order.

    Excludes EXPIRED lots, lots past their date and empty lots.
    """
    query = _valid_lots_query(owner, vaccine_id, as_of)
    if lock:
        query = lock_for_update(query)
    return query.all()


def available_quantity(owner: Owner, vaccine_id: int, *, as_of: date | None = None) -> int:
    as_of = as_of or today()
    q = db.session.query(func.coalesce(func.sum(StockLot.quantity), 0)).filter(
        StockLot.owned_by(owner),
        StockLot.vaccine_id == vaccine_id,
        StockLot.status == LOT_STATUS_VALID,
        StockLot.quantity > 0,
        StockLot.expiration >= as_of,
    )
    return int(q.scalar() or 0)


def allocate_fefo(owner: Owner, vaccine_id: int, quantity: int, *, lock: bool = True) -> list[tuple[StockLot, int]]:
    """
    Plan which lots cover quantity, closest expiry first.

    Returns [(lot, take), ...] summing exactly to quantity. Does not modify
    the lots. Raises InsufficientStockError when the owner's valid stock is
    short; no partial plans are returned.
    """
    require_positive_int(quantity)
    lots = list_valid_lots(owner, vaccine_id, lock=lock)

    remaining = quantity
    plan = []
    for lot in lots:
        if remaining <= 0:
            break
        take = min(remaining, lot.quantity)
        if take <= 0:
            continue
        plan.append((lot, take))
        remaining -= take

    if remaining > 0:
        available = sum(lot.quantity for lot in lots)
        raise InsufficientStockError(quantity, available, owner, vaccine_id)

    return plan


def debit_lot(lot: StockLot, quantity: int) -> StockLot:
    """Remove quantity from a lot. Aggregate is left to the caller."""
    if quantity <= 0:
        raise ValueError("debit quantity must be positive")
    if lot.quantity < quantity:
        raise InsufficientQuantityError(lot.id, lot.quantity, -quantity)
    lot.quantity = lot.quantity - quantity
    return lot


def credit_lot(lot: StockLot, quantity: int) -> StockLot:
    """Add quantity back to a lot. Aggregate is left to the caller."""
    if quantity <= 0:
        raise ValueError("credit quantity must be positive")
    lot.quantity = lot.quantity + quantity
    return lot


def recompute_aggregate(owner: Owner, vaccine_id: int) -> AggregateStock:
    """
    Set the owner's aggregate row for vaccine from its VALID lots.

    Creates the row if missing. Runs inside the caller's transaction.
    """
    total = db.session.query(func.coalesce(func.sum(StockLot.quantity), 0)).filter(
        StockLot.owned_by(owner),
        StockLot.vaccine_id == vaccine_id,
        StockLot.status == LOT_STATUS_VALID,
    ).scalar()
    total = int(total or 0)

    aggregate = lock_for_update(
        db.session.query(AggregateStock).filter(
            AggregateStock.owned_by(owner),
            AggregateStock.vaccine_id == vaccine_id,
        )
    ).first()

    if aggregate is None:
        aggregate = AggregateStock(vaccine_id=vaccine_id, quantity=total)
        aggregate.owner = owner
        db.session.add(aggregate)
    elif aggregate.quantity != total:
        aggregate.quantity = total

    db.session.flush()
    return aggregate


def get_aggregate_quantity(owner: Owner, vaccine_id: int) -> int:
    aggregate = db.session.query(AggregateStock).filter(
        AggregateStock.owned_by(owner),
        AggregateStock.vaccine_id == vaccine_id,
    ).first()
    return aggregate.quantity if aggregate else 0


def create_lot(
    owner: Owner,
    vaccine_id: int,
    quantity: int,
    expiration,
    *,
    source_lot_id: int | None = None,
) -> StockLot:
    """
    Insert a lot row. Status is derived from the expiration date.

    Aggregate is left to the caller so that multi-lot writes recompute once.
    """
    require_positive_int(quantity)
    expiration = parse_iso_date(expiration)

    lot = StockLot(
        vaccine_id=vaccine_id,
        quantity=quantity,
        expiration=expiration,
        status=status_for_expiration(expiration),
        source_lot_id=source_lot_id,
    )
    lot.owner = owner
    db.session.add(lot)
    db.session.flush()
    return lot


def receive_lot(
    owner: Owner,
    vaccine_id: int,
    quantity: int,
    expiration,
    *,
    scope,
    note: str | None = None,
) -> StockLot:
    """
    Record stock arriving at an owner (initial seeding, delivery).

    Raises:
        ScopeError: scope does not cover owner
        OwnerNotFoundError / VaccineNotFoundError
        ValueError: bad quantity or expiration
    """
    require_owner_exists(owner)
    require_scope_covers(scope, owner, "receive")
    require_vaccine(vaccine_id)

    lot = create_lot(owner, vaccine_id, quantity, expiration)
    recompute_aggregate(owner, vaccine_id)

    append_event(
        event_type="lot.received",
        entity_type="LOT",
        entity_id=lot.id,
        scope=scope,
        payload={
            "owner": owner.to_dict(),
            "vaccine_id": vaccine_id,
            "quantity": quantity,
            "expiration": lot.expiration.isoformat(),
            "note": note,
        },
    )
    return lot


def adjust_quantity(lot_id: int, delta: int, *, scope, note: str | None = None) -> StockLot:
    """
    Manual correction of one lot's quantity.

    Negative delta debits, positive delta credits. The lot row is locked for
    the rest of the transaction.

    Raises:
        LotNotFoundError
        InsufficientQuantityError: the lot would go negative
        ScopeError: scope does not cover the lot owner
        ValueError: delta is zero or not an integer
    """
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValueError("delta must be an integer")
    if delta == 0:
        raise ValueError("delta must not be zero")

    lot = get_lot(lot_id, lock=True)
    require_scope_covers(scope, lot.owner, "adjust")

    before = lot.quantity
    if before + delta < 0:
        raise InsufficientQuantityError(lot.id, before, delta)

    lot.quantity = before + delta
    db.session.flush()
    recompute_aggregate(lot.owner, lot.vaccine_id)

    append_event(
        event_type="lot.adjusted",
        entity_type="LOT",
        entity_id=lot.id,
        scope=scope,
        payload={"before": before, "delta": delta, "after": lot.quantity, "note": note},
    )
    return lot


def mark_expired(as_of: date | None = None) -> list[StockLot]:
    """
    Flip VALID lots whose expiration has passed to EXPIRED.

    Idempotent and order-independent; safe to run from a periodic job or
    lazily before reads. Recomputes each touched aggregate once.
    """
    as_of = as_of or today()
    lots = (
        db.session.query(StockLot)
        .filter(StockLot.status == LOT_STATUS_VALID, StockLot.expiration < as_of)
        .order_by(StockLot.id.asc())
        .all()
    )
    if not lots:
        return []

    combos = {}
    for lot in lots:
        lot.status = LOT_STATUS_EXPIRED
        combos[(lot.owner, lot.vaccine_id)] = True
    db.session.flush()

    for owner, vaccine_id in combos:
        recompute_aggregate(owner, vaccine_id)

    if has_app_context():
        current_app.logger.info(
            "Expired %s lot(s) across %s owner/vaccine pair(s)", len(lots), len(combos)
        )
    return lots


def maybe_mark_expired() -> list[StockLot]:
    """Run the expiration sweep when STOCK_LAZY_EXPIRY is enabled."""
    if has_app_context() and current_app.config.get("STOCK_LAZY_EXPIRY"):
        return mark_expired()
    return []


def recompute_all_aggregates() -> int:
    """Rebuild every aggregate row from lots. Returns the number of pairs touched."""
    pairs = set()
    for level, owner_id, vaccine_id in db.session.query(
        StockLot.owner_level, StockLot.owner_id, StockLot.vaccine_id
    ).distinct():
        pairs.add((Owner(level, owner_id), vaccine_id))
    for level, owner_id, vaccine_id in db.session.query(
        AggregateStock.owner_level, AggregateStock.owner_id, AggregateStock.vaccine_id
    ).distinct():
        pairs.add((Owner(level, owner_id), vaccine_id))

    for owner, vaccine_id in sorted(pairs, key=lambda p: (p[0].depth, p[0].id or 0, p[1])):
        recompute_aggregate(owner, vaccine_id)
    return len(pairs)


def get_owner_stock(owner: Owner, vaccine_id: int | None = None) -> dict:
    """Aggregate rows and lots held by an owner, for read endpoints."""
    require_owner_exists(owner)

    aggregates = db.session.query(AggregateStock).filter(AggregateStock.owned_by(owner))
    lots = db.session.query(StockLot).filter(StockLot.owned_by(owner))
    if vaccine_id is not None:
        aggregates = aggregates.filter(AggregateStock.vaccine_id == vaccine_id)
        lots = lots.filter(StockLot.vaccine_id == vaccine_id)

    return {
        "owner": owner.to_dict(),
        "stocks": [a.to_dict() for a in aggregates.order_by(AggregateStock.vaccine_id).all()],
        "lots": [
            lot.to_dict()
            for lot in lots.order_by(StockLot.vaccine_id, StockLot.expiration, StockLot.id).all()
        ],
    }


def reserved_quantity(lot_id: int) -> int:
    """Doses of a lot currently set aside for appointments."""
    q = db.session.query(func.coalesce(func.sum(StockReservation.quantity), 0)).filter(
        StockReservation.stock_lot_id == lot_id
    )
    return int(q.scalar() or 0)


def delete_lot(lot_id: int) -> dict:
    """
    Remove one lot without touching lots derived from it.

    - confirmed transfer history lines stop pointing at the lot
    - remaining reservations on the lot are dropped (callers cancel the
      appointments first)
    - pending transfer lines keep their snapshot with lot_id set to NULL, so
      a later reject/cancel recreates the lot at the sender
    - lots split from this one lose their source link
    """
    lot = get_lot(lot_id, lock=True)
    owner, vaccine_id = lot.owner, lot.vaccine_id
    snapshot = lot.to_dict()

    db.session.query(StockTransferLot).filter(StockTransferLot.lot_id == lot.id).update(
        {StockTransferLot.lot_id: None}, synchronize_session=False
    )
    db.session.query(StockTransferLot).filter(StockTransferLot.destination_lot_id == lot.id).update(
        {StockTransferLot.destination_lot_id: None}, synchronize_session=False
    )
    db.session.query(StockReservation).filter(StockReservation.stock_lot_id == lot.id).delete(
        synchronize_session=False
    )
    db.session.query(PendingStockTransferLot).filter(PendingStockTransferLot.lot_id == lot.id).update(
        {PendingStockTransferLot.lot_id: None}, synchronize_session=False
    )
    db.session.query(StockLot).filter(StockLot.source_lot_id == lot.id).update(
        {StockLot.source_lot_id: None}, synchronize_session=False
    )

    db.session.delete(lot)
    db.session.flush()
    db.session.expire_all()

    recompute_aggregate(owner, vaccine_id)
    return snapshot
