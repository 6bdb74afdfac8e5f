# backend/vaxstock/services/transfer_service.py
"""
Stock transfers between owners.

WHY: Stock moves down (or across) the administrative tree in two phases so
that the receiver can refuse a shipment. The sender's lots are debited at
proposal time; the quantity is "in flight" until the receiver confirms or
rejects, or the sender cancels.

LIFECYCLE:
1. PENDING: source lots debited (FEFO), PendingStockTransferLot rows record
   which lots and how much
2. CONFIRMED: destination lots created or topped up with the same
   expiration as each source line
3. REJECTED: receiver refused; source lots credited back
4. CANCELLED: sender withdrew; source lots credited back

CONFIRMED, REJECTED and CANCELLED are terminal. PENDING transfers never
expire on their own.
"""
from __future__ import annotations

from sqlalchemy import and_, or_

from ..errors import StockLedgerError, NotFoundError
from ..extensions import db
from ..models import (
    PendingStockTransfer,
    PendingStockTransferLot,
    StockLot,
    StockTransfer,
    StockTransferLot,
)
from ..owners import Owner
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .event_log_service import append_event
from .lot_service import (
    allocate_fefo,
    create_lot,
    credit_lot,
    debit_lot,
    recompute_aggregate,
    require_positive_int,
    require_vaccine,
    status_for_expiration,
)
from .scope_service import require_owner_exists, require_scope_covers


# Transfer status constants
TRANSFER_STATUS_PENDING = "PENDING"
TRANSFER_STATUS_CONFIRMED = "CONFIRMED"
TRANSFER_STATUS_REJECTED = "REJECTED"
TRANSFER_STATUS_CANCELLED = "CANCELLED"

TERMINAL_STATUSES = {
    TRANSFER_STATUS_CONFIRMED,
    TRANSFER_STATUS_REJECTED,
    TRANSFER_STATUS_CANCELLED,
}


class TransferError(StockLedgerError):
    """Raised when transfer operations fail."""
    pass


class TransferNotFoundError(NotFoundError):
    pass


class TransferNotPendingError(TransferError):
    """Raised when a terminal transfer is confirmed, rejected or cancelled again."""
    http_status = 409

    def __init__(self, transfer_id: int, status: str, action: str):
        self.transfer_id = transfer_id
        self.status = status
        super().__init__(f"Cannot {action} transfer {transfer_id} in {status} status")


InvalidTransferState = TransferNotPendingError


def _party_filter(level_col, id_col, owner: Owner):
    if owner.id is None:
        return and_(level_col == owner.level.value, id_col.is_(None))
    return and_(level_col == owner.level.value, id_col == owner.id)


def get_transfer(transfer_id: int, *, lock: bool = False) -> PendingStockTransfer:
    query = db.session.query(PendingStockTransfer).filter_by(id=transfer_id)
    if lock:
        query = lock_for_update(query)
    transfer = query.first()
    if transfer is None:
        raise TransferNotFoundError(f"Transfer {transfer_id} not found")
    return transfer


def _require_pending(transfer: PendingStockTransfer, action: str) -> None:
    if transfer.status != TRANSFER_STATUS_PENDING:
        raise TransferNotPendingError(transfer.id, transfer.status, action)


def propose_transfer(
    vaccine_id: int,
    from_owner: Owner,
    to_owner: Owner,
    quantity: int,
    *,
    scope,
    user_id: int | None = None,
) -> PendingStockTransfer:
    """
    Reserve stock at from_owner for to_owner (status: PENDING).

    Source lots are picked closest-expiry first and debited immediately,
    so the same doses cannot be offered twice. No partial transfers.

    Args:
        vaccine_id: Vaccine to move
        from_owner: Sender
        to_owner: Receiver (any other owner, same level allowed)
        quantity: Doses to move
        scope: Caller's ActorScope; must cover from_owner
        user_id: User proposing (defaults to scope.user_id)

    Returns:
        PendingStockTransfer: The created transfer with its lot lines

    Raises:
        ValueError: quantity is not a positive integer
        TransferError: from_owner == to_owner
        InsufficientStockError: valid stock at from_owner is short
        ScopeError / OwnerNotFoundError / VaccineNotFoundError
    """
    require_positive_int(quantity)
    if from_owner == to_owner:
        raise TransferError("Cannot transfer to the same owner")
    actor_user_id = user_id if user_id is not None else getattr(scope, "user_id", None)

    def _op():
        require_owner_exists(from_owner)
        require_owner_exists(to_owner)
        require_scope_covers(scope, from_owner, "send")
        require_vaccine(vaccine_id)

        plan = allocate_fefo(from_owner, vaccine_id, quantity, lock=True)

        transfer = PendingStockTransfer(
            vaccine_id=vaccine_id,
            total_quantity=quantity,
            status=TRANSFER_STATUS_PENDING,
            created_by_user_id=actor_user_id,
        )
        transfer.from_owner = from_owner
        transfer.to_owner = to_owner
        db.session.add(transfer)

        for position, (lot, take) in enumerate(plan):
            debit_lot(lot, take)
            transfer.lots.append(PendingStockTransferLot(
                lot_id=lot.id,
                quantity_reserved=take,
                expiration=lot.expiration,
                position=position,
            ))

        # Version check on each debited lot happens here
        db.session.flush()
        recompute_aggregate(from_owner, vaccine_id)

        append_event(
            event_type="transfer.proposed",
            entity_type="PENDING_TRANSFER",
            entity_id=transfer.id,
            scope=scope,
            actor_user_id=actor_user_id,
            payload={
                "vaccine_id": vaccine_id,
                "from_owner": from_owner.to_dict(),
                "to_owner": to_owner.to_dict(),
                "quantity": quantity,
                "lots": [{"lot_id": lot.id, "quantity": take} for lot, take in plan],
            },
        )
        return transfer

    return run_with_retry(_op)


def _destination_lot(owner: Owner, vaccine_id: int, expiration) -> StockLot | None:
    """Existing lot at owner that a line with this expiration can top up."""
    return lock_for_update(
        db.session.query(StockLot).filter(
            StockLot.owned_by(owner),
            StockLot.vaccine_id == vaccine_id,
            StockLot.expiration == expiration,
            StockLot.status == status_for_expiration(expiration),
        ).order_by(StockLot.id.asc())
    ).first()


def confirm_transfer(transfer_id: int, *, scope, user_id: int | None = None) -> PendingStockTransfer:
    """
    Receive a pending transfer (receiver action).

    Each line lands in a destination lot with the line's own expiration:
    an existing lot with that exact expiration is topped up, otherwise a
    new lot is created pointing at the source lot. Lines from different
    source lots are never merged across expirations. A line whose date
    has already passed lands as an EXPIRED lot.

    Raises:
        TransferNotFoundError
        TransferNotPendingError: transfer is not PENDING
        ScopeError: scope does not cover the receiver
    """
    def _op():
        transfer = get_transfer(transfer_id, lock=True)
        _require_pending(transfer, "confirm")
        to_owner = transfer.to_owner
        require_owner_exists(to_owner)
        require_scope_covers(scope, to_owner, "receive")
        actor_user_id = user_id if user_id is not None else getattr(scope, "user_id", None)
        now = utcnow()

        history = StockTransfer(
            pending_transfer_id=transfer.id,
            vaccine_id=transfer.vaccine_id,
            from_level=transfer.from_level,
            from_id=transfer.from_id,
            to_level=transfer.to_level,
            to_id=transfer.to_id,
            quantity=transfer.total_quantity,
            confirmed_by_user_id=actor_user_id,
            confirmed_at=now,
        )
        db.session.add(history)
        db.session.flush()

        received = []
        for line in transfer.lots:
            destination = _destination_lot(to_owner, transfer.vaccine_id, line.expiration)
            if destination is None:
                destination = create_lot(
                    to_owner,
                    transfer.vaccine_id,
                    line.quantity_reserved,
                    line.expiration,
                    source_lot_id=line.lot_id,
                )
            else:
                credit_lot(destination, line.quantity_reserved)

            history.lines.append(StockTransferLot(
                lot_id=line.lot_id,
                destination_lot_id=destination.id,
                quantity=line.quantity_reserved,
                expiration=line.expiration,
            ))
            received.append({"lot_id": destination.id, "quantity": line.quantity_reserved})

        transfer.status = TRANSFER_STATUS_CONFIRMED
        transfer.resolved_by_user_id = actor_user_id
        transfer.resolved_at = now
        db.session.flush()

        recompute_aggregate(to_owner, transfer.vaccine_id)

        append_event(
            event_type="transfer.confirmed",
            entity_type="PENDING_TRANSFER",
            entity_id=transfer.id,
            scope=scope,
            actor_user_id=actor_user_id,
            payload={"stock_transfer_id": history.id, "lots": received},
        )
        return transfer

    return run_with_retry(_op)


def restore_source_lots(transfer: PendingStockTransfer) -> list[dict]:
    """
    Credit every reserved line back to the sender.

    A line whose source lot was deleted meanwhile (lot_id NULL, or the row
    is gone) recreates a lot at the sender from the expiration snapshot.
    """
    from_owner = transfer.from_owner
    restored = []
    for line in transfer.lots:
        lot = None
        if line.lot_id is not None:
            lot = lock_for_update(db.session.query(StockLot).filter_by(id=line.lot_id)).first()

        if lot is not None:
            credit_lot(lot, line.quantity_reserved)
            restored.append({"lot_id": lot.id, "quantity": line.quantity_reserved, "recreated": False})
        else:
            lot = create_lot(
                from_owner,
                transfer.vaccine_id,
                line.quantity_reserved,
                line.expiration,
            )
            line.lot_id = lot.id
            restored.append({"lot_id": lot.id, "quantity": line.quantity_reserved, "recreated": True})

    db.session.flush()
    recompute_aggregate(from_owner, transfer.vaccine_id)
    return restored


def _resolve_back(
    transfer_id: int,
    *,
    scope,
    status: str,
    action: str,
    reason: str | None,
    user_id: int | None,
) -> PendingStockTransfer:
    def _op():
        transfer = get_transfer(transfer_id, lock=True)
        _require_pending(transfer, action)
        if status == TRANSFER_STATUS_REJECTED:
            require_scope_covers(scope, transfer.to_owner, "reject")
        else:
            require_scope_covers(scope, transfer.from_owner, "cancel")
        actor_user_id = user_id if user_id is not None else getattr(scope, "user_id", None)

        restored = restore_source_lots(transfer)

        transfer.status = status
        transfer.resolved_by_user_id = actor_user_id
        transfer.resolved_at = utcnow()
        transfer.resolution_note = reason
        db.session.flush()

        append_event(
            event_type=f"transfer.{status.lower()}",
            entity_type="PENDING_TRANSFER",
            entity_id=transfer.id,
            scope=scope,
            actor_user_id=actor_user_id,
            payload={"reason": reason, "lots": restored},
        )
        return transfer

    return run_with_retry(_op)


def reject_transfer(
    transfer_id: int,
    *,
    scope,
    reason: str | None = None,
    user_id: int | None = None,
) -> PendingStockTransfer:
    """Refuse a pending transfer (receiver action); stock goes back to the sender."""
    return _resolve_back(
        transfer_id,
        scope=scope,
        status=TRANSFER_STATUS_REJECTED,
        action="reject",
        reason=reason,
        user_id=user_id,
    )


def cancel_transfer(
    transfer_id: int,
    *,
    scope,
    reason: str | None = None,
    user_id: int | None = None,
) -> PendingStockTransfer:
    """Withdraw a pending transfer (sender action); stock goes back to the sender."""
    return _resolve_back(
        transfer_id,
        scope=scope,
        status=TRANSFER_STATUS_CANCELLED,
        action="cancel",
        reason=reason,
        user_id=user_id,
    )


def list_pending_transfers(
    owner: Owner | None = None,
    *,
    direction: str = "incoming",
    vaccine_id: int | None = None,
) -> list[PendingStockTransfer]:
    """
    PENDING transfers, oldest first.

    direction is "incoming" (owner receives), "outgoing" (owner sends) or
    "all". owner=None lists every pending transfer.
    """
    query = db.session.query(PendingStockTransfer).filter(
        PendingStockTransfer.status == TRANSFER_STATUS_PENDING
    )
    if owner is not None:
        incoming = _party_filter(PendingStockTransfer.to_level, PendingStockTransfer.to_id, owner)
        outgoing = _party_filter(PendingStockTransfer.from_level, PendingStockTransfer.from_id, owner)
        if direction == "incoming":
            query = query.filter(incoming)
        elif direction == "outgoing":
            query = query.filter(outgoing)
        elif direction == "all":
            query = query.filter(or_(incoming, outgoing))
        else:
            raise ValueError("direction must be one of: incoming, outgoing, all")
    if vaccine_id is not None:
        query = query.filter(PendingStockTransfer.vaccine_id == vaccine_id)
    return query.order_by(PendingStockTransfer.created_at.asc(), PendingStockTransfer.id.asc()).all()


def get_transfer_history(owner: Owner, *, vaccine_id: int | None = None, limit: int = 100) -> list[StockTransfer]:
    """Confirmed transfers sent or received by owner, newest first."""
    query = db.session.query(StockTransfer).filter(
        or_(
            _party_filter(StockTransfer.from_level, StockTransfer.from_id, owner),
            _party_filter(StockTransfer.to_level, StockTransfer.to_id, owner),
        )
    )
    if vaccine_id is not None:
        query = query.filter(StockTransfer.vaccine_id == vaccine_id)
    return query.order_by(StockTransfer.confirmed_at.desc(), StockTransfer.id.desc()).limit(limit).all()


def serialize_transfer(transfer: PendingStockTransfer) -> dict:
    data = transfer.to_dict()
    data["lots"] = [line.to_dict() for line in transfer.lots]
    return data


def serialize_history(transfer: StockTransfer) -> dict:
    data = transfer.to_dict()
    data["lots"] = [line.to_dict() for line in transfer.lines]
    return data
