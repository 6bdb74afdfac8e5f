from __future__ import annotations

from sqlalchemy import and_

from ..extensions import db
from ..owners import Owner, OwnerLevel
from ..time_utils import to_utc_z, to_iso_date


LOT_STATUS_VALID = "VALID"
LOT_STATUS_EXPIRED = "EXPIRED"


class OwnedMixin:
    """
    Columns and helpers shared by rows that belong to an Owner.

    owner_id is NULL for the NATIONAL owner.
    """
    owner_level = db.Column(db.String(16), nullable=False, index=True)
    owner_id = db.Column(db.Integer, nullable=True, index=True)

    @property
    def owner(self) -> Owner:
        return Owner(OwnerLevel(self.owner_level), self.owner_id)

    @owner.setter
    def owner(self, value: Owner) -> None:
        self.owner_level = value.level.value
        self.owner_id = value.id

    @classmethod
    def owned_by(cls, owner: Owner):
        """SQL filter matching rows held by owner."""
        if owner.id is None:
            return and_(cls.owner_level == owner.level.value, cls.owner_id.is_(None))
        return and_(cls.owner_level == owner.level.value, cls.owner_id == owner.id)

    @classmethod
    def owned_by_any(cls, level: OwnerLevel, ids):
        """SQL filter matching rows held by any of the given owners of one level."""
        return and_(cls.owner_level == level.value, cls.owner_id.in_(list(ids)))


class StockLot(OwnedMixin, db.Model):
    """
    A batch of one vaccine sharing one expiration date, held by one Owner.

    INVARIANTS:
    - quantity >= 0 (enforced by check constraint and by lot_service)
    - status only moves VALID -> EXPIRED
    - a zero-quantity lot stays for audit but is never allocated
    """
    __tablename__ = "stock_lots"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_stock_lots_quantity_non_negative"),
        db.Index("ix_stock_lots_owner_vaccine", "owner_level", "owner_id", "vaccine_id"),
        db.Index("ix_stock_lots_fefo", "vaccine_id", "status", "expiration", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    vaccine_id = db.Column(db.Integer, db.ForeignKey("vaccines.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    expiration = db.Column(db.Date, nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default=LOT_STATUS_VALID, index=True)

    # Lot this one was split from when it arrived through a transfer
    source_lot_id = db.Column(db.Integer, db.ForeignKey("stock_lots.id"), nullable=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    vaccine = db.relationship("Vaccine")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<StockLot id={self.id} vaccine_id={self.vaccine_id} owner={self.owner} "
            f"quantity={self.quantity} expiration={self.expiration} status={self.status}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "vaccine_id": self.vaccine_id,
            "owner": self.owner.to_dict(),
            "quantity": self.quantity,
            "expiration": to_iso_date(self.expiration),
            "status": self.status,
            "source_lot_id": self.source_lot_id,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class AggregateStock(OwnedMixin, db.Model):
    """
    Denormalized per-owner, per-vaccine quantity.

    INVARIANT: quantity == SUM(StockLot.quantity) over the owner's VALID lots
    of the vaccine. Only lot_service.recompute_aggregate writes this column.

    NATIONAL rows have owner_id NULL, so the unique constraint cannot cover
    them on every backend; recompute_aggregate looks the row up before
    creating it.
    """
    __tablename__ = "aggregate_stocks"
    __table_args__ = (
        db.UniqueConstraint("vaccine_id", "owner_level", "owner_id", name="uq_aggregate_stocks_owner_vaccine"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    vaccine_id = db.Column(db.Integer, db.ForeignKey("vaccines.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    vaccine = db.relationship("Vaccine")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<AggregateStock vaccine_id={self.vaccine_id} owner={self.owner} quantity={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "vaccine_id": self.vaccine_id,
            "owner": self.owner.to_dict(),
            "quantity": self.quantity,
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at),
        }


class StockReservation(db.Model):
    """
    Dose set aside at a health center for one scheduled appointment.

    The reserved quantity has already been debited from the lot; releasing
    the reservation credits it back.
    """
    __tablename__ = "stock_reservations"
    __table_args__ = (
        db.UniqueConstraint("schedule_id", name="uq_stock_reservations_schedule"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    schedule_id = db.Column(db.Integer, db.ForeignKey("child_vaccinations.id"), nullable=False)
    stock_lot_id = db.Column(db.Integer, db.ForeignKey("stock_lots.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    schedule = db.relationship("ChildVaccination")
    stock_lot = db.relationship("StockLot")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "schedule_id": self.schedule_id,
            "stock_lot_id": self.stock_lot_id,
            "quantity": self.quantity,
            "created_at": to_utc_z(self.created_at),
        }
