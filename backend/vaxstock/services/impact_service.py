# Overview: Read-only deletion impact previews for administrative entities, vaccines and lots.

# backend/vaxstock/services/impact_service.py

from __future__ import annotations

from dataclasses import dataclass, field, asdict

from sqlalchemy import and_, or_, func, select

from ..errors import NotFoundError
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
from ..models.people import (
    VACCINATION_SCHEDULED,
    VACCINATION_DUE,
    VACCINATION_LATE,
    VACCINATION_OVERDUE,
    VACCINATION_COMPLETED,
)
from ..owners import Owner, OwnerLevel, EntityType
from .lot_service import get_lot, require_positive_int
from .reservation_service import reserved_appointments_for_lot
from .scope_service import require_scope_covers, require_scope_for_entity_deletion
from .transfer_service import TRANSFER_STATUS_PENDING
"""
Deletion Impact Invariants (authoritative)

- Every function here is read-only: no writes, no flush, no row locks.
- collect_targets() is the single source of the id sets a deletion touches;
  the cascade executor calls it again on current state, so a preview and an
  execution with no write in between report identical counts.
- Walk order: Region -> Communes -> Districts -> HealthCenters -> Children,
  then the vaccine usage graph (vaccination records, reservations, visit
  records, lots, aggregates, pending transfers, users).
- Pending transfers are affected when the subtree is sender or receiver, or
  when one of their lines draws from an affected lot. Every status counts.
- affected_appointments = SCHEDULED records destroyed + appointments outside
  the target whose reservation sits on an affected lot.
"""


class EntityNotFoundError(NotFoundError):
    """Raised when a deletion target does not exist."""

    def __init__(self, entity_type: EntityType, entity_id: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.value} {entity_id} not found")


VACCINATION_CATEGORIES = {
    VACCINATION_SCHEDULED: "scheduled",
    VACCINATION_DUE: "due",
    VACCINATION_LATE: "late",
    VACCINATION_OVERDUE: "overdue",
    VACCINATION_COMPLETED: "completed",
}

COUNT_CATEGORIES = (
    "communes",
    "districts",
    "health_centers",
    "children",
    "users",
    "stock_lots",
    "aggregate_stocks",
    "pending_transfers",
    "transfer_history",
    "stock_reservations",
    "records",
    "scheduled",
    "due",
    "late",
    "overdue",
    "completed",
)


@dataclass(frozen=True)
class CascadeImpact:
    entity_type: str
    entity_id: int
    name: str | None = None
    communes: int = 0
    districts: int = 0
    health_centers: int = 0
    children: int = 0
    users: int = 0
    stock_lots: int = 0
    aggregate_stocks: int = 0
    pending_transfers: int = 0
    transfer_history: int = 0
    stock_reservations: int = 0
    records: int = 0
    scheduled: int = 0
    due: int = 0
    late: int = 0
    overdue: int = 0
    completed: int = 0
    affected_appointments: int = 0
    will_cancel_appointments: bool = False

    def counts(self) -> dict:
        return {name: getattr(self, name) for name in COUNT_CATEGORIES}

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CascadeTargets:
    """
    Ids of every row a deletion removes, collected on current state.

    Lists hold primary keys; vaccinations is keyed by status.
    """
    entity_type: EntityType
    entity_id: int
    name: str | None = None
    region_ids: list = field(default_factory=list)
    commune_ids: list = field(default_factory=list)
    district_ids: list = field(default_factory=list)
    health_center_ids: list = field(default_factory=list)
    vaccine_ids: list = field(default_factory=list)
    owners: list = field(default_factory=list)
    child_ids: list = field(default_factory=list)
    user_ids: list = field(default_factory=list)
    vaccinations: dict = field(default_factory=dict)
    reservation_ids: list = field(default_factory=list)
    external_schedule_ids: list = field(default_factory=list)
    record_ids: list = field(default_factory=list)
    lot_ids: list = field(default_factory=list)
    aggregate_ids: list = field(default_factory=list)
    pending_transfer_ids: list = field(default_factory=list)
    pending_line_ids: list = field(default_factory=list)
    history_transfer_ids: list = field(default_factory=list)
    history_line_ids: list = field(default_factory=list)

    @property
    def vaccination_ids(self) -> list:
        return [vid for ids in self.vaccinations.values() for vid in ids]

    @property
    def scheduled_ids(self) -> list:
        return list(self.vaccinations.get(VACCINATION_SCHEDULED, []))

    def to_impact(self) -> CascadeImpact:
        affected = len(self.scheduled_ids) + len(self.external_schedule_ids)
        return CascadeImpact(
            entity_type=self.entity_type.value,
            entity_id=self.entity_id,
            name=self.name,
            communes=len(self.commune_ids),
            districts=len(self.district_ids),
            health_centers=len(self.health_center_ids),
            children=len(self.child_ids),
            users=len(self.user_ids),
            stock_lots=len(self.lot_ids),
            aggregate_stocks=len(self.aggregate_ids),
            pending_transfers=len(self.pending_transfer_ids),
            transfer_history=len(self.history_line_ids),
            stock_reservations=len(self.reservation_ids),
            records=len(self.record_ids),
            affected_appointments=affected,
            will_cancel_appointments=affected > 0,
            **{
                category: len(self.vaccinations.get(status, []))
                for status, category in VACCINATION_CATEGORIES.items()
            },
        )


def _ids(query) -> list:
    return sorted(row[0] for row in query.order_by(None).distinct().all() if row[0] is not None)


def _owner_conditions(level_col, id_col, owners) -> list:
    """OR-able conditions matching any owner in owners on a (level, id) column pair."""
    by_level = {}
    for owner in owners:
        by_level.setdefault(owner.level, []).append(owner.id)
    conditions = []
    for level, ids in by_level.items():
        if level is OwnerLevel.NATIONAL:
            conditions.append(and_(level_col == level.value, id_col.is_(None)))
        else:
            conditions.append(and_(level_col == level.value, id_col.in_(ids)))
    return conditions


def _subtree_owners(region_ids, district_ids, health_center_ids) -> list[Owner]:
    owners = [Owner.regional(rid) for rid in region_ids]
    owners += [Owner.district(did) for did in district_ids]
    owners += [Owner.health_center(hid) for hid in health_center_ids]
    return owners


def _collect_subtree(targets: CascadeTargets) -> None:
    """Fill tree, children, records, users and stock ids for an administrative target."""
    entity_type, entity_id = targets.entity_type, targets.entity_id

    if entity_type is EntityType.REGION:
        region = db.session.get(Region, entity_id)
        if region is None:
            raise EntityNotFoundError(entity_type, entity_id)
        targets.name = region.name
        targets.region_ids = [region.id]
        targets.commune_ids = _ids(db.session.query(Commune.id).filter(Commune.region_id == region.id))
    elif entity_type is EntityType.COMMUNE:
        commune = db.session.get(Commune, entity_id)
        if commune is None:
            raise EntityNotFoundError(entity_type, entity_id)
        targets.name = commune.name
        targets.commune_ids = [commune.id]
    elif entity_type is EntityType.DISTRICT:
        district = db.session.get(District, entity_id)
        if district is None:
            raise EntityNotFoundError(entity_type, entity_id)
        targets.name = district.name
        targets.district_ids = [district.id]
    elif entity_type is EntityType.HEALTHCENTER:
        health_center = db.session.get(HealthCenter, entity_id)
        if health_center is None:
            raise EntityNotFoundError(entity_type, entity_id)
        targets.name = health_center.name
        targets.health_center_ids = [health_center.id]
    else:
        raise ValueError(f"{entity_type.value} is not an administrative entity")

    if targets.commune_ids and not targets.district_ids:
        targets.district_ids = _ids(
            db.session.query(District.id).filter(District.commune_id.in_(targets.commune_ids))
        )
    if targets.district_ids and not targets.health_center_ids:
        targets.health_center_ids = _ids(
            db.session.query(HealthCenter.id).filter(HealthCenter.district_id.in_(targets.district_ids))
        )

    if targets.health_center_ids:
        targets.child_ids = _ids(
            db.session.query(Child.id).filter(Child.health_center_id.in_(targets.health_center_ids))
        )

    if targets.child_ids:
        for status in VACCINATION_CATEGORIES:
            targets.vaccinations[status] = _ids(
                db.session.query(ChildVaccination.id).filter(
                    ChildVaccination.child_id.in_(targets.child_ids),
                    ChildVaccination.status == status,
                )
            )

    record_conditions = []
    if targets.child_ids:
        record_conditions.append(VisitRecord.child_id.in_(targets.child_ids))
    if targets.health_center_ids:
        record_conditions.append(VisitRecord.health_center_id.in_(targets.health_center_ids))
    if record_conditions:
        targets.record_ids = _ids(db.session.query(VisitRecord.id).filter(or_(*record_conditions)))

    user_conditions = []
    if targets.region_ids:
        user_conditions.append(User.region_id.in_(targets.region_ids))
    if targets.district_ids:
        user_conditions.append(User.district_id.in_(targets.district_ids))
    if targets.health_center_ids:
        user_conditions.append(User.health_center_id.in_(targets.health_center_ids))
    if user_conditions:
        targets.user_ids = _ids(db.session.query(User.id).filter(or_(*user_conditions)))

    targets.owners = _subtree_owners(targets.region_ids, targets.district_ids, targets.health_center_ids)
    if targets.owners:
        targets.lot_ids = _ids(
            db.session.query(StockLot.id).filter(
                or_(*_owner_conditions(StockLot.owner_level, StockLot.owner_id, targets.owners))
            )
        )
        targets.aggregate_ids = _ids(
            db.session.query(AggregateStock.id).filter(
                or_(*_owner_conditions(AggregateStock.owner_level, AggregateStock.owner_id, targets.owners))
            )
        )

    transfer_conditions = []
    if targets.owners:
        transfer_conditions += _owner_conditions(
            PendingStockTransfer.from_level, PendingStockTransfer.from_id, targets.owners
        )
        transfer_conditions += _owner_conditions(
            PendingStockTransfer.to_level, PendingStockTransfer.to_id, targets.owners
        )
    if targets.lot_ids:
        transfer_conditions.append(
            PendingStockTransfer.id.in_(
                select(PendingStockTransferLot.pending_transfer_id).where(
                    PendingStockTransferLot.lot_id.in_(targets.lot_ids)
                )
            )
        )
    if transfer_conditions:
        targets.pending_transfer_ids = _ids(
            db.session.query(PendingStockTransfer.id).filter(or_(*transfer_conditions))
        )

    _collect_stock_links(targets)


def _collect_stock_links(targets: CascadeTargets) -> None:
    """Reservations, pending lines and history lines hanging off the collected ids."""
    reservation_conditions = []
    if targets.vaccination_ids:
        reservation_conditions.append(StockReservation.schedule_id.in_(targets.vaccination_ids))
    if targets.lot_ids:
        reservation_conditions.append(StockReservation.stock_lot_id.in_(targets.lot_ids))
    if reservation_conditions:
        rows = (
            db.session.query(StockReservation.id, StockReservation.schedule_id)
            .filter(or_(*reservation_conditions))
            .order_by(StockReservation.id)
            .all()
        )
        targets.reservation_ids = [row[0] for row in rows]
        own = set(targets.vaccination_ids)
        targets.external_schedule_ids = sorted({row[1] for row in rows if row[1] not in own})

    line_conditions = []
    if targets.pending_transfer_ids:
        line_conditions.append(PendingStockTransferLot.pending_transfer_id.in_(targets.pending_transfer_ids))
    if targets.lot_ids:
        line_conditions.append(PendingStockTransferLot.lot_id.in_(targets.lot_ids))
    if line_conditions:
        targets.pending_line_ids = _ids(
            db.session.query(PendingStockTransferLot.id).filter(or_(*line_conditions))
        )

    history_conditions = []
    if targets.history_transfer_ids:
        history_conditions.append(StockTransferLot.transfer_id.in_(targets.history_transfer_ids))
    if targets.lot_ids:
        history_conditions.append(StockTransferLot.lot_id.in_(targets.lot_ids))
        history_conditions.append(StockTransferLot.destination_lot_id.in_(targets.lot_ids))
    if history_conditions:
        targets.history_line_ids = _ids(
            db.session.query(StockTransferLot.id).filter(or_(*history_conditions))
        )


def _collect_vaccine(targets: CascadeTargets) -> None:
    vaccine = db.session.get(Vaccine, targets.entity_id)
    if vaccine is None:
        raise EntityNotFoundError(targets.entity_type, targets.entity_id)
    vaccine_id = vaccine.id
    targets.name = vaccine.name
    targets.vaccine_ids = [vaccine_id]

    for status in VACCINATION_CATEGORIES:
        targets.vaccinations[status] = _ids(
            db.session.query(ChildVaccination.id).filter(
                ChildVaccination.vaccine_id == vaccine_id,
                ChildVaccination.status == status,
            )
        )
    targets.record_ids = _ids(db.session.query(VisitRecord.id).filter(VisitRecord.vaccine_id == vaccine_id))
    targets.lot_ids = _ids(db.session.query(StockLot.id).filter(StockLot.vaccine_id == vaccine_id))
    targets.aggregate_ids = _ids(
        db.session.query(AggregateStock.id).filter(AggregateStock.vaccine_id == vaccine_id)
    )
    targets.pending_transfer_ids = _ids(
        db.session.query(PendingStockTransfer.id).filter(PendingStockTransfer.vaccine_id == vaccine_id)
    )
    targets.history_transfer_ids = _ids(
        db.session.query(StockTransfer.id).filter(StockTransfer.vaccine_id == vaccine_id)
    )
    _collect_stock_links(targets)


def _collect_lot(targets: CascadeTargets) -> None:
    lot = db.session.get(StockLot, targets.entity_id)
    if lot is None:
        raise EntityNotFoundError(targets.entity_type, targets.entity_id)
    targets.name = f"{lot.vaccine.name if lot.vaccine else lot.vaccine_id} / {lot.expiration.isoformat()}"
    targets.lot_ids = [lot.id]
    targets.owners = [lot.owner]

    # Appointments reserved on the lot are cancelled before the lot goes
    schedule_ids = [vaccination.id for _, vaccination in reserved_appointments_for_lot(lot.id)]
    targets.vaccinations[VACCINATION_SCHEDULED] = sorted(schedule_ids)
    targets.reservation_ids = _ids(
        db.session.query(StockReservation.id).filter(StockReservation.stock_lot_id == lot.id)
    )


def collect_targets(entity_type, entity_id: int) -> CascadeTargets:
    """Resolve every id a deletion of (entity_type, entity_id) would remove."""
    entity_type = EntityType.parse(entity_type) if not isinstance(entity_type, EntityType) else entity_type
    targets = CascadeTargets(entity_type=entity_type, entity_id=entity_id)
    if entity_type is EntityType.VACCINE:
        _collect_vaccine(targets)
    elif entity_type is EntityType.LOT:
        _collect_lot(targets)
    else:
        _collect_subtree(targets)
    return targets


def require_deletion_scope(scope, entity_type: EntityType, entity_id: int) -> None:
    """Scope check shared by preview and execution."""
    if entity_type is EntityType.LOT:
        lot = db.session.get(StockLot, entity_id)
        if lot is not None:
            require_scope_covers(scope, lot.owner, "delete")
        return
    require_scope_for_entity_deletion(scope, entity_type, entity_id)


def region_impact(region_id: int) -> CascadeImpact:
    return collect_targets(EntityType.REGION, region_id).to_impact()


def commune_impact(commune_id: int) -> CascadeImpact:
    return collect_targets(EntityType.COMMUNE, commune_id).to_impact()


def district_impact(district_id: int) -> CascadeImpact:
    return collect_targets(EntityType.DISTRICT, district_id).to_impact()


def health_center_impact(health_center_id: int) -> CascadeImpact:
    return collect_targets(EntityType.HEALTHCENTER, health_center_id).to_impact()


def vaccine_impact(vaccine_id: int) -> CascadeImpact:
    return collect_targets(EntityType.VACCINE, vaccine_id).to_impact()


def lot_impact(lot_id: int) -> CascadeImpact:
    return collect_targets(EntityType.LOT, lot_id).to_impact()


def preview_deletion_impact(entity_type, entity_id: int, *, scope) -> CascadeImpact:
    """
    What deleting (entity_type, entity_id) would remove, computed now.

    Raises:
        ValueError: unknown entity type
        ScopeError: scope may not delete the target
        EntityNotFoundError: target does not exist
    """
    entity_type = EntityType.parse(entity_type) if not isinstance(entity_type, EntityType) else entity_type
    require_deletion_scope(scope, entity_type, entity_id)
    return collect_targets(entity_type, entity_id).to_impact()


def preview_vaccine_deletion_impact(vaccine_id: int, *, scope) -> dict:
    """Appointment summary shown before a vaccine is deleted."""
    require_deletion_scope(scope, EntityType.VACCINE, vaccine_id)
    impact = vaccine_impact(vaccine_id)
    return {
        "vaccine_id": vaccine_id,
        "affected_appointments": impact.affected_appointments,
        "will_cancel_appointments": impact.will_cancel_appointments,
        "counts": impact.counts(),
    }


def lot_reduction_impact(lot_id: int, quantity: int) -> dict:
    """
    Appointments that reducing a lot by quantity would cancel.

    The lot's quantity is its free stock; reserved doses are still on the
    shelf, so physical = quantity + reserved. Reservations are given up
    latest appointment first until the free stock covers the reduction.

    Raises:
        LotNotFoundError
        ValueError: quantity is not positive or exceeds the physical stock
    """
    require_positive_int(quantity)
    lot = get_lot(lot_id)
    reservations = reserved_appointments_for_lot(lot.id)
    reserved = sum(reservation.quantity for reservation, _ in reservations)
    physical = lot.quantity + reserved
    if quantity > physical:
        raise ValueError(
            f"Cannot reduce lot {lot.id} by {quantity}; only {physical} doses on hand"
        )

    released = 0
    schedule_ids = []
    for reservation, vaccination in reservations:
        if lot.quantity + released >= quantity:
            break
        released += reservation.quantity
        schedule_ids.append(vaccination.id)

    return {
        "lot_id": lot.id,
        "quantity": quantity,
        "free_quantity": lot.quantity,
        "reserved_quantity": reserved,
        "physical_quantity": physical,
        "remaining_after_reduce": physical - quantity,
        "reserved_after_cancel": reserved - released,
        "schedule_ids": schedule_ids,
        "affected_appointments": len(schedule_ids),
        "will_cancel_appointments": bool(schedule_ids),
    }


def owner_stock_impact(owner: Owner, vaccine_id: int) -> dict:
    """What removing one owner's stock of one vaccine would touch."""
    lot_ids = _ids(
        db.session.query(StockLot.id).filter(StockLot.owned_by(owner), StockLot.vaccine_id == vaccine_id)
    )
    schedule_ids = []
    if lot_ids:
        schedule_ids = _ids(
            db.session.query(StockReservation.schedule_id).filter(StockReservation.stock_lot_id.in_(lot_ids))
        )
    pending = (
        db.session.query(func.count(PendingStockTransfer.id))
        .filter(
            PendingStockTransfer.vaccine_id == vaccine_id,
            PendingStockTransfer.status == TRANSFER_STATUS_PENDING,
            or_(
                *_owner_conditions(PendingStockTransfer.from_level, PendingStockTransfer.from_id, [owner]),
                *_owner_conditions(PendingStockTransfer.to_level, PendingStockTransfer.to_id, [owner]),
            ),
        )
        .scalar()
    )
    quantity = (
        db.session.query(func.coalesce(func.sum(StockLot.quantity), 0))
        .filter(StockLot.owned_by(owner), StockLot.vaccine_id == vaccine_id)
        .scalar()
    )
    aggregates = (
        db.session.query(func.count(AggregateStock.id))
        .filter(AggregateStock.owned_by(owner), AggregateStock.vaccine_id == vaccine_id)
        .scalar()
    )
    return {
        "owner": owner.to_dict(),
        "vaccine_id": vaccine_id,
        "stock_lots": len(lot_ids),
        "aggregate_stocks": int(aggregates or 0),
        "quantity": int(quantity or 0),
        "pending_transfers": int(pending or 0),
        "affected_appointments": len(schedule_ids),
        "will_cancel_appointments": bool(schedule_ids),
    }
