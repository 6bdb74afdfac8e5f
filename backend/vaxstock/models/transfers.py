from __future__ import annotations

from ..extensions import db
from ..owners import Owner, OwnerLevel
from ..time_utils import to_utc_z, to_iso_date


class PendingStockTransfer(db.Model):
    """
    Proposed movement of one vaccine between two owners.

    LIFECYCLE:
    1. PENDING: source lots already debited, quantity is in flight
    2. CONFIRMED: receiver accepted, destination lots credited
    3. REJECTED: receiver refused, source lots credited back
    4. CANCELLED: sender withdrew before confirmation, source lots credited back

    CONFIRMED, REJECTED and CANCELLED are terminal. PENDING transfers never
    expire on their own.
    """
    __tablename__ = "pending_stock_transfers"
    __table_args__ = (
        db.Index("ix_pending_transfers_from", "from_level", "from_id", "status"),
        db.Index("ix_pending_transfers_to", "to_level", "to_id", "status"),
        db.CheckConstraint("total_quantity > 0", name="ck_pending_transfers_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    vaccine_id = db.Column(db.Integer, db.ForeignKey("vaccines.id"), nullable=False, index=True)

    from_level = db.Column(db.String(16), nullable=False)
    from_id = db.Column(db.Integer, nullable=True)
    to_level = db.Column(db.String(16), nullable=False)
    to_id = db.Column(db.Integer, nullable=True)

    total_quantity = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    resolved_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_note = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    vaccine = db.relationship("Vaccine")
    lots = db.relationship(
        "PendingStockTransferLot",
        backref="pending_transfer",
        lazy=True,
        order_by="PendingStockTransferLot.position",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def from_owner(self) -> Owner:
        return Owner(OwnerLevel(self.from_level), self.from_id)

    @from_owner.setter
    def from_owner(self, value: Owner) -> None:
        self.from_level = value.level.value
        self.from_id = value.id

    @property
    def to_owner(self) -> Owner:
        return Owner(OwnerLevel(self.to_level), self.to_id)

    @to_owner.setter
    def to_owner(self, value: Owner) -> None:
        self.to_level = value.level.value
        self.to_id = value.id

    def __repr__(self) -> str:
        return (
            f"<PendingStockTransfer id={self.id} {self.from_owner} -> {self.to_owner} "
            f"qty={self.total_quantity} status={self.status}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "vaccine_id": self.vaccine_id,
            "from_owner": self.from_owner.to_dict(),
            "to_owner": self.to_owner.to_dict(),
            "total_quantity": self.total_quantity,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "resolved_by_user_id": self.resolved_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "resolved_at": to_utc_z(self.resolved_at),
            "resolution_note": self.resolution_note,
            "version_id": self.version_id,
        }


class PendingStockTransferLot(db.Model):
    """
    Source lot amount earmarked by a pending transfer.

    Frozen at proposal time. lot_id becomes NULL when the source lot is
    deleted on its own; the expiration snapshot lets a reject or cancel
    recreate the lot at the sender.
    """
    __tablename__ = "pending_stock_transfer_lots"
    __table_args__ = (
        db.CheckConstraint("quantity_reserved > 0", name="ck_pending_transfer_lots_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    pending_transfer_id = db.Column(
        db.Integer, db.ForeignKey("pending_stock_transfers.id"), nullable=False, index=True
    )
    lot_id = db.Column(db.Integer, db.ForeignKey("stock_lots.id"), nullable=True, index=True)
    quantity_reserved = db.Column(db.Integer, nullable=False)
    expiration = db.Column(db.Date, nullable=False)

    # FEFO order in which the lot was allocated
    position = db.Column(db.Integer, nullable=False, default=0)

    lot = db.relationship("StockLot")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pending_transfer_id": self.pending_transfer_id,
            "lot_id": self.lot_id,
            "quantity_reserved": self.quantity_reserved,
            "expiration": to_iso_date(self.expiration),
            "position": self.position,
        }


class StockTransfer(db.Model):
    """Completed transfer, written when a pending transfer is confirmed."""
    __tablename__ = "stock_transfers"
    __table_args__ = (
        db.Index("ix_stock_transfers_from", "from_level", "from_id"),
        db.Index("ix_stock_transfers_to", "to_level", "to_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    pending_transfer_id = db.Column(db.Integer, nullable=True, index=True)
    vaccine_id = db.Column(db.Integer, db.ForeignKey("vaccines.id"), nullable=False, index=True)
    from_level = db.Column(db.String(16), nullable=False)
    from_id = db.Column(db.Integer, nullable=True)
    to_level = db.Column(db.String(16), nullable=False)
    to_id = db.Column(db.Integer, nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    confirmed_by_user_id = db.Column(db.Integer, nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    lines = db.relationship("StockTransferLot", backref="transfer", lazy=True)

    @property
    def from_owner(self) -> Owner:
        return Owner(OwnerLevel(self.from_level), self.from_id)

    @property
    def to_owner(self) -> Owner:
        return Owner(OwnerLevel(self.to_level), self.to_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pending_transfer_id": self.pending_transfer_id,
            "vaccine_id": self.vaccine_id,
            "from_owner": self.from_owner.to_dict(),
            "to_owner": self.to_owner.to_dict(),
            "quantity": self.quantity,
            "confirmed_by_user_id": self.confirmed_by_user_id,
            "confirmed_at": to_utc_z(self.confirmed_at),
        }


class StockTransferLot(db.Model):
    __tablename__ = "stock_transfer_lots"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("stock_transfers.id"), nullable=False, index=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("stock_lots.id"), nullable=True, index=True)
    destination_lot_id = db.Column(db.Integer, db.ForeignKey("stock_lots.id"), nullable=True, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    expiration = db.Column(db.Date, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_id": self.transfer_id,
            "lot_id": self.lot_id,
            "destination_lot_id": self.destination_lot_id,
            "quantity": self.quantity,
            "expiration": to_iso_date(self.expiration),
        }
