# backend/vaxstock/services/cascade_service.py
"""
Cascade deletion of administrative entities, vaccines and lots.

WHY: Deleting an entity has to remove everything that hangs off it
(children, vaccination records, stock, transfers, users) without relying on
database ON DELETE CASCADE, because transfers and reservations cross
ownership boundaries the schema does not model.

ORDER (administrative entities), children-of before parent-of:
1. reservations on affected schedules or lots
2. vaccination records of affected children
3. visit records of the subtree or its children
4. children
5. pending transfer lines, confirmed-history lines on affected lots,
   pending transfers
6. stock lots owned by the subtree
7. aggregate rows of the subtree
8. users attached to the subtree
9. health centers, districts, communes, region

The ids are re-collected on current state (impact_service.collect_targets),
not taken from an earlier preview. Nothing here commits: the caller commits
on success and rolls back on any exception, so a failure at any step leaves
no partial deletion.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app, has_app_context

from ..errors import NotFoundError, StockLedgerError
from ..extensions import db
from ..models import (
    Region,
    Commune,
    District,
    HealthCenter,
    Vaccine,
    User,
    Child,
    ChildVaccination,
    VisitRecord,
    StockLot,
    AggregateStock,
    StockReservation,
    PendingStockTransfer,
    PendingStockTransferLot,
    StockTransfer,
    StockTransferLot,
)
from ..owners import EntityType, Owner
from .concurrency import lock_for_update
from .event_log_service import append_event
from .impact_service import (
    COUNT_CATEGORIES,
    VACCINATION_CATEGORIES,
    EntityNotFoundError,
    collect_targets,
    lot_reduction_impact,
    require_deletion_scope,
)
from .lot_service import adjust_quantity, credit_lot, delete_lot, get_lot, recompute_aggregate
from .reservation_service import cancel_appointments, refresh_next_appointment
from .scope_service import require_scope_covers
from .transfer_service import TRANSFER_STATUS_PENDING, restore_source_lots


class AlreadyDeletedError(StockLedgerError):
    """Raised when the deletion target vanished between preview and execution."""
    http_status = 410

    def __init__(self, entity_type: EntityType, entity_id: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.value} {entity_id} was already deleted")


class OwnerStockNotFoundError(NotFoundError):
    """Raised when an owner holds no stock record for the vaccine."""

    def __init__(self, owner: Owner, vaccine_id: int):
        super().__init__(f"{owner} has no stock of vaccine {vaccine_id}")


@dataclass(frozen=True)
class CascadeResult:
    entity_type: str
    entity_id: int
    name: str | None = None
    counts: dict = field(default_factory=dict)
    cancelled_appointments: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "name": self.name,
            "counts": dict(self.counts),
            "cancelled_appointments": list(self.cancelled_appointments),
        }


def _delete_ids(model, ids) -> int:
    """Bulk delete rows by primary key; returns the number of rows removed."""
    if not ids:
        return 0
    return db.session.query(model).filter(model.id.in_(list(ids))).delete(synchronize_session=False)


def _release_outside_reservations(targets) -> None:
    """Credit back doses reserved on lots that survive the deletion."""
    if not targets.reservation_ids:
        return
    doomed_lots = set(targets.lot_ids)
    touched = set()
    reservations = (
        db.session.query(StockReservation)
        .filter(StockReservation.id.in_(targets.reservation_ids))
        .order_by(StockReservation.id)
        .all()
    )
    for reservation in reservations:
        if reservation.stock_lot_id in doomed_lots:
            continue
        lot = lock_for_update(db.session.query(StockLot).filter_by(id=reservation.stock_lot_id)).first()
        if lot is None:
            continue
        credit_lot(lot, reservation.quantity)
        touched.add((lot.owner, lot.vaccine_id))
    db.session.flush()
    for owner, vaccine_id in touched:
        recompute_aggregate(owner, vaccine_id)


def _return_inbound_transfers(targets) -> None:
    """PENDING transfers sent into the subtree from outside go back to their sender."""
    if not targets.pending_transfer_ids:
        return
    inside = set(targets.owners)
    transfers = (
        db.session.query(PendingStockTransfer)
        .filter(
            PendingStockTransfer.id.in_(targets.pending_transfer_ids),
            PendingStockTransfer.status == TRANSFER_STATUS_PENDING,
        )
        .order_by(PendingStockTransfer.id)
        .all()
    )
    for transfer in transfers:
        if transfer.from_owner not in inside:
            restore_source_lots(transfer)


def _detach_derived_lots(lot_ids) -> None:
    if lot_ids:
        db.session.query(StockLot).filter(StockLot.source_lot_id.in_(list(lot_ids))).update(
            {StockLot.source_lot_id: None}, synchronize_session=False
        )


def _execute_subtree(targets, counts: dict) -> None:
    _release_outside_reservations(targets)
    counts["stock_reservations"] = _delete_ids(StockReservation, targets.reservation_ids)

    for status, category in VACCINATION_CATEGORIES.items():
        counts[category] = _delete_ids(ChildVaccination, targets.vaccinations.get(status, []))

    counts["records"] = _delete_ids(VisitRecord, targets.record_ids)
    counts["children"] = _delete_ids(Child, targets.child_ids)

    _return_inbound_transfers(targets)
    _delete_ids(PendingStockTransferLot, targets.pending_line_ids)
    counts["transfer_history"] = _delete_ids(StockTransferLot, targets.history_line_ids)
    counts["pending_transfers"] = _delete_ids(PendingStockTransfer, targets.pending_transfer_ids)

    _detach_derived_lots(targets.lot_ids)
    counts["stock_lots"] = _delete_ids(StockLot, targets.lot_ids)
    counts["aggregate_stocks"] = _delete_ids(AggregateStock, targets.aggregate_ids)

    counts["users"] = _delete_ids(User, targets.user_ids)

    counts["health_centers"] = _delete_ids(HealthCenter, targets.health_center_ids)
    counts["districts"] = _delete_ids(District, targets.district_ids)
    counts["communes"] = _delete_ids(Commune, targets.commune_ids)
    _delete_ids(Region, targets.region_ids)


def _execute_vaccine(targets, counts: dict) -> None:
    vaccine_id = targets.entity_id
    children = set()
    if targets.scheduled_ids:
        children = {
            row[0]
            for row in db.session.query(ChildVaccination.child_id)
            .filter(ChildVaccination.id.in_(targets.scheduled_ids))
            .all()
        }
    children |= {
        row[0] for row in db.session.query(Child.id).filter(Child.next_vaccine_id == vaccine_id).all()
    }

    counts["stock_reservations"] = _delete_ids(StockReservation, targets.reservation_ids)
    for status, category in VACCINATION_CATEGORIES.items():
        counts[category] = _delete_ids(ChildVaccination, targets.vaccinations.get(status, []))
    counts["records"] = _delete_ids(VisitRecord, targets.record_ids)

    _delete_ids(PendingStockTransferLot, targets.pending_line_ids)
    counts["pending_transfers"] = _delete_ids(PendingStockTransfer, targets.pending_transfer_ids)
    counts["transfer_history"] = _delete_ids(StockTransferLot, targets.history_line_ids)
    _delete_ids(StockTransfer, targets.history_transfer_ids)

    _detach_derived_lots(targets.lot_ids)
    counts["stock_lots"] = _delete_ids(StockLot, targets.lot_ids)
    counts["aggregate_stocks"] = _delete_ids(AggregateStock, targets.aggregate_ids)

    db.session.query(Child).filter(Child.next_vaccine_id == vaccine_id).update(
        {Child.next_vaccine_id: None, Child.next_appointment_at: None}, synchronize_session=False
    )
    db.session.expire_all()
    for child_id in sorted(children):
        refresh_next_appointment(child_id)
    db.session.flush()

    _delete_ids(Vaccine, [vaccine_id])


def _execute_lot(targets, counts: dict) -> list:
    counts["stock_reservations"] = len(targets.reservation_ids)
    cancelled = cancel_appointments(targets.scheduled_ids)
    counts["scheduled"] = len(cancelled)
    delete_lot(targets.entity_id)
    counts["stock_lots"] = 1
    return cancelled


def execute_cascade_deletion(entity_type, entity_id: int, *, scope) -> CascadeResult:
    """
    Delete an entity and everything that depends on it, in one transaction.

    Raises:
        ValueError: unknown entity type
        ScopeError: scope may not delete the target
        AlreadyDeletedError: target no longer exists
    """
    entity_type = EntityType.parse(entity_type) if not isinstance(entity_type, EntityType) else entity_type
    require_deletion_scope(scope, entity_type, entity_id)

    try:
        targets = collect_targets(entity_type, entity_id)
    except EntityNotFoundError:
        raise AlreadyDeletedError(entity_type, entity_id)

    counts = {category: 0 for category in COUNT_CATEGORIES}
    if entity_type is EntityType.VACCINE:
        cancelled = [{"schedule_id": sid} for sid in targets.scheduled_ids]
        _execute_vaccine(targets, counts)
    elif entity_type is EntityType.LOT:
        cancelled = _execute_lot(targets, counts)
    else:
        cancelled = [
            {"schedule_id": sid} for sid in targets.scheduled_ids + targets.external_schedule_ids
        ]
        _execute_subtree(targets, counts)

    db.session.flush()
    db.session.expire_all()

    append_event(
        event_type="cascade.executed",
        entity_type=entity_type.value,
        entity_id=entity_id,
        scope=scope,
        payload={"name": targets.name, "counts": counts},
    )

    if has_app_context():
        current_app.logger.info(
            "Cascade deletion of %s %s removed %s",
            entity_type.value,
            entity_id,
            {k: v for k, v in counts.items() if v},
        )

    return CascadeResult(
        entity_type=entity_type.value,
        entity_id=entity_id,
        name=targets.name,
        counts=counts,
        cancelled_appointments=cancelled,
    )


def reduce_lot(lot_id: int, quantity: int, *, scope, note: str | None = None) -> dict:
    """
    Take doses out of a lot, cancelling the appointments that no longer fit.

    Appointments are chosen by lot_reduction_impact (latest first); their
    reservations are released before the lot is debited.

    Raises:
        LotNotFoundError
        ScopeError
        ValueError: quantity is not positive or exceeds the physical stock
    """
    lot = get_lot(lot_id)
    require_scope_covers(scope, lot.owner, "reduce")
    impact = lot_reduction_impact(lot_id, quantity)

    cancelled = cancel_appointments(impact["schedule_ids"])
    lot = adjust_quantity(lot_id, -quantity, scope=scope, note=note or "reduce")

    return {
        "lot": lot.to_dict(),
        "cancelled_appointments": cancelled,
        "affected_appointments": len(cancelled),
    }


def delete_owner_stock(owner: Owner, vaccine_id: int, *, scope) -> dict:
    """
    Remove everything one owner holds of one vaccine.

    Appointments reserved on those lots are cancelled first. Each lot then
    goes through delete_lot, so transfers keep their snapshots and lots
    already sent elsewhere stay put. The aggregate row goes last.

    Raises:
        ScopeError
        OwnerStockNotFoundError: the owner has no aggregate row for the vaccine
    """
    require_scope_covers(scope, owner, "delete stock of")

    aggregate = lock_for_update(
        db.session.query(AggregateStock).filter(
            AggregateStock.owned_by(owner),
            AggregateStock.vaccine_id == vaccine_id,
        )
    ).first()
    if aggregate is None:
        raise OwnerStockNotFoundError(owner, vaccine_id)
    aggregate_id = aggregate.id

    lots = (
        db.session.query(StockLot)
        .filter(StockLot.owned_by(owner), StockLot.vaccine_id == vaccine_id)
        .order_by(StockLot.id.asc())
        .all()
    )
    lot_ids = [lot.id for lot in lots]
    quantity = sum(lot.quantity for lot in lots)

    schedule_ids = []
    if lot_ids:
        schedule_ids = [
            row[0]
            for row in db.session.query(StockReservation.schedule_id)
            .filter(StockReservation.stock_lot_id.in_(lot_ids))
            .order_by(StockReservation.schedule_id.asc())
            .all()
        ]

    cancelled = cancel_appointments(schedule_ids)
    for lot_id in lot_ids:
        delete_lot(lot_id)

    db.session.delete(db.session.get(AggregateStock, aggregate_id))
    db.session.flush()
    db.session.expire_all()

    append_event(
        event_type="stock.deleted",
        entity_type="AGGREGATE_STOCK",
        entity_id=aggregate_id,
        scope=scope,
        payload={"owner": owner.to_dict(), "vaccine_id": vaccine_id, "lot_ids": lot_ids},
    )

    return {
        "owner": owner.to_dict(),
        "vaccine_id": vaccine_id,
        "stock_lots": len(lot_ids),
        "aggregate_stocks": 1,
        "quantity": quantity,
        "cancelled_appointments": cancelled,
        "affected_appointments": len(cancelled),
    }
