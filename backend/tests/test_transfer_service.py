# Overview: Pytest coverage for the two-phase transfer lifecycle.

"""
Transfer Lifecycle Tests

Stock leaves the sender when a transfer is proposed and reaches the receiver
only on confirm. Reject and cancel put it back. Quantities are conserved
across every transition.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func

from vaxstock.extensions import db
from vaxstock.models import (
    StockLot,
    StockTransfer,
    PendingStockTransfer,
)
from vaxstock.owners import Owner
from vaxstock.services import event_log_service, lot_service, transfer_service
from vaxstock.services.lot_service import InsufficientStockError, VaccineNotFoundError
from vaxstock.services.scope_service import ActorScope, ScopeError
from vaxstock.services.transfer_service import (
    TransferError,
    TransferNotFoundError,
    TransferNotPendingError,
    TRANSFER_STATUS_PENDING,
    TRANSFER_STATUS_CONFIRMED,
    TRANSFER_STATUS_REJECTED,
    TRANSFER_STATUS_CANCELLED,
)
from vaxstock.time_utils import today


def _total_valid(vaccine_id: int) -> int:
    """Doses sitting in lots across every owner."""
    db.session.expire_all()
    return int(
        db.session.query(func.coalesce(func.sum(StockLot.quantity), 0))
        .filter(StockLot.vaccine_id == vaccine_id)
        .scalar()
    )


def _in_flight(vaccine_id: int) -> int:
    return int(
        db.session.query(func.coalesce(func.sum(PendingStockTransfer.total_quantity), 0))
        .filter(
            PendingStockTransfer.vaccine_id == vaccine_id,
            PendingStockTransfer.status == TRANSFER_STATUS_PENDING,
        )
        .scalar()
    )


@pytest.fixture
def owners(tree):
    return {
        "district": Owner.district(tree.d1.id),
        "hc1": Owner.health_center(tree.hc1.id),
        "hc2": Owner.health_center(tree.hc2.id),
        "hc3": Owner.health_center(tree.hc3.id),
    }


class TestProposeTransfer:

    def test_fefo_allocation_keeps_expirations_apart(self, owners, vaccine, make_lot, superadmin, read_stock):
        """50 from the earlier lot, 20 from the later one; receiver gets two lots."""
        a, b = owners["hc1"], owners["hc2"]
        l2 = make_lot(a, vaccine.id, 80, days=180)
        l1 = make_lot(a, vaccine.id, 50, days=30)

        transfer = transfer_service.propose_transfer(vaccine.id, a, b, 70, scope=superadmin)
        db.session.commit()

        assert [(line.lot_id, line.quantity_reserved) for line in transfer.lots] == [(l1.id, 50), (l2.id, 20)]
        assert read_stock.lot(l1.id) == 0
        assert read_stock.lot(l2.id) == 60
        assert read_stock.aggregate(a, vaccine.id) == 60
        assert read_stock.aggregate(b, vaccine.id) == 0
        assert [lot.id for lot in lot_service.list_valid_lots(a, vaccine.id)] == [l2.id]

        transfer_service.confirm_transfer(transfer.id, scope=ActorScope.for_owner(b))
        db.session.commit()

        received = (
            db.session.query(StockLot)
            .filter(StockLot.owned_by(b))
            .order_by(StockLot.expiration)
            .all()
        )
        assert [(lot.quantity, lot.expiration) for lot in received] == [
            (50, today() + timedelta(days=30)),
            (20, today() + timedelta(days=180)),
        ]
        assert [lot.source_lot_id for lot in received] == [l1.id, l2.id]
        assert read_stock.aggregate(b, vaccine.id) == 70

    def test_insufficient_stock_leaves_lots_untouched(self, owners, vaccine, make_lot, superadmin, read_stock):
        lot = make_lot(owners["district"], vaccine.id, 10)

        with pytest.raises(InsufficientStockError):
            transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 11, scope=superadmin)
        db.session.rollback()

        assert read_stock.lot(lot.id) == 10
        assert db.session.query(PendingStockTransfer).count() == 0

    def test_expired_lots_are_not_sent(self, owners, vaccine, make_lot, superadmin):
        make_lot(owners["district"], vaccine.id, 100, days=-1)
        make_lot(owners["district"], vaccine.id, 5, days=10)

        with pytest.raises(InsufficientStockError) as exc:
            transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 6, scope=superadmin)
        assert exc.value.available == 5

    def test_same_owner_rejected(self, owners, vaccine, make_lot, superadmin):
        make_lot(owners["hc1"], vaccine.id, 10)
        with pytest.raises(TransferError):
            transfer_service.propose_transfer(vaccine.id, owners["hc1"], owners["hc1"], 1, scope=superadmin)

    @pytest.mark.parametrize("quantity", [0, -5, 1.5, False])
    def test_quantity_must_be_positive_integer(self, owners, vaccine, superadmin, quantity):
        with pytest.raises(ValueError):
            transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], quantity, scope=superadmin)

    def test_unknown_vaccine(self, owners, superadmin):
        with pytest.raises(VaccineNotFoundError):
            transfer_service.propose_transfer(9999, owners["district"], owners["hc1"], 1, scope=superadmin)

    def test_sender_must_be_in_scope(self, owners, tree, vaccine, make_lot):
        make_lot(owners["district"], vaccine.id, 10)
        scope = ActorScope("HEALTHCENTER", tree.hc1.id)

        with pytest.raises(ScopeError):
            transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 5, scope=scope)

    def test_peer_transfer_between_health_centers(self, owners, tree, vaccine, make_lot):
        make_lot(owners["hc1"], vaccine.id, 10)

        transfer = transfer_service.propose_transfer(
            vaccine.id, owners["hc1"], owners["hc3"], 4, scope=ActorScope("HEALTHCENTER", tree.hc1.id, 7)
        )
        db.session.commit()

        assert transfer.status == TRANSFER_STATUS_PENDING
        assert transfer.created_by_user_id == 7

    def test_sequential_proposals_cannot_double_spend(self, owners, vaccine, make_lot, superadmin):
        make_lot(owners["district"], vaccine.id, 10)

        transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 7, scope=superadmin)
        db.session.commit()

        with pytest.raises(InsufficientStockError):
            transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc2"], 7, scope=superadmin)
        db.session.rollback()

        assert _total_valid(vaccine.id) + _in_flight(vaccine.id) == 10

    def test_proposal_logs_event(self, owners, vaccine, make_lot, superadmin):
        make_lot(owners["district"], vaccine.id, 10)
        transfer = transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 3, scope=superadmin)
        db.session.commit()

        events = event_log_service.list_events(entity_type="PENDING_TRANSFER", entity_id=transfer.id)
        assert [ev.event_type for ev in events] == ["transfer.proposed"]
        assert events[0].actor_level == "SUPERADMIN"
        assert events[0].payload_dict()["quantity"] == 3


class TestConfirmTransfer:

    def test_confirm_tops_up_lot_with_same_expiration(self, owners, vaccine, make_lot, superadmin, read_stock):
        lot = make_lot(owners["district"], vaccine.id, 10, days=40)
        existing = make_lot(owners["hc1"], vaccine.id, 2, days=40)

        transfer = transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 6, scope=superadmin)
        transfer_service.confirm_transfer(transfer.id, scope=superadmin)
        db.session.commit()

        assert read_stock.lot(existing.id) == 8
        assert db.session.query(StockLot).filter(StockLot.owned_by(owners["hc1"])).count() == 1
        assert read_stock.lot(lot.id) == 4

    def test_confirm_writes_history(self, owners, vaccine, make_lot, superadmin):
        make_lot(owners["district"], vaccine.id, 10)
        transfer = transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 6, scope=superadmin)
        transfer_service.confirm_transfer(transfer.id, scope=ActorScope("HEALTHCENTER", owners["hc1"].id, 3))
        db.session.commit()

        history = transfer_service.get_transfer_history(owners["hc1"])
        assert len(history) == 1
        assert history[0].pending_transfer_id == transfer.id
        assert history[0].quantity == 6
        assert history[0].confirmed_by_user_id == 3
        assert sum(line.quantity for line in history[0].lines) == 6
        assert transfer_service.get_transfer_history(owners["district"])[0].id == history[0].id

    def test_receiver_scope_required(self, owners, tree, vaccine, make_lot, superadmin):
        make_lot(owners["district"], vaccine.id, 10)
        transfer = transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 6, scope=superadmin)
        db.session.commit()

        with pytest.raises(ScopeError):
            transfer_service.confirm_transfer(transfer.id, scope=ActorScope("HEALTHCENTER", tree.hc2.id))

    def test_unknown_transfer(self, db_session, superadmin):
        with pytest.raises(TransferNotFoundError):
            transfer_service.confirm_transfer(31337, scope=superadmin)


class TestResolveBack:

    def test_reject_restores_source_lots(self, owners, vaccine, make_lot, superadmin, read_stock):
        l1 = make_lot(owners["district"], vaccine.id, 5, days=20)
        l2 = make_lot(owners["district"], vaccine.id, 10, days=40)
        transfer = transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 8, scope=superadmin)
        db.session.commit()

        rejected = transfer_service.reject_transfer(
            transfer.id, scope=ActorScope.for_owner(owners["hc1"]), reason="cold chain broken"
        )
        db.session.commit()

        assert rejected.status == TRANSFER_STATUS_REJECTED
        assert rejected.resolution_note == "cold chain broken"
        assert read_stock.lot(l1.id) == 5
        assert read_stock.lot(l2.id) == 10
        assert read_stock.aggregate(owners["district"], vaccine.id) == 15
        assert read_stock.aggregate(owners["hc1"], vaccine.id) == 0

    def test_cancel_is_a_sender_action(self, owners, tree, vaccine, make_lot, superadmin):
        make_lot(owners["district"], vaccine.id, 10)
        transfer = transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 4, scope=superadmin)
        db.session.commit()

        with pytest.raises(ScopeError):
            transfer_service.cancel_transfer(transfer.id, scope=ActorScope("HEALTHCENTER", tree.hc1.id))
        db.session.rollback()

        cancelled = transfer_service.cancel_transfer(transfer.id, scope=ActorScope("DISTRICT", tree.d1.id))
        db.session.commit()
        assert cancelled.status == TRANSFER_STATUS_CANCELLED

    def test_cancel_recreates_deleted_source_lot(self, owners, vaccine, make_lot, superadmin, read_stock):
        lot = make_lot(owners["district"], vaccine.id, 10, days=25)
        expiration = lot.expiration
        transfer = transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 4, scope=superadmin)
        db.session.commit()
        lot_service.delete_lot(lot.id)
        db.session.commit()

        transfer_service.cancel_transfer(transfer.id, scope=superadmin)
        db.session.commit()

        restored = db.session.query(StockLot).filter(StockLot.owned_by(owners["district"])).one()
        assert restored.quantity == 4
        assert restored.expiration == expiration
        assert transfer_service.get_transfer(transfer.id).lots[0].lot_id == restored.id
        assert read_stock.aggregate(owners["district"], vaccine.id) == 4

    @pytest.mark.parametrize("first, second", [
        ("confirm", "confirm"),
        ("confirm", "reject"),
        ("reject", "cancel"),
        ("cancel", "confirm"),
    ])
    def test_terminal_states_are_final(self, owners, vaccine, make_lot, superadmin, read_stock, first, second):
        make_lot(owners["district"], vaccine.id, 10)
        transfer = transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 4, scope=superadmin)
        actions = {
            "confirm": transfer_service.confirm_transfer,
            "reject": transfer_service.reject_transfer,
            "cancel": transfer_service.cancel_transfer,
        }
        actions[first](transfer.id, scope=superadmin)
        db.session.commit()
        before = (
            read_stock.aggregate(owners["district"], vaccine.id),
            read_stock.aggregate(owners["hc1"], vaccine.id),
        )

        with pytest.raises(TransferNotPendingError):
            actions[second](transfer.id, scope=superadmin)
        db.session.rollback()

        after = (
            read_stock.aggregate(owners["district"], vaccine.id),
            read_stock.aggregate(owners["hc1"], vaccine.id),
        )
        assert before == after


class TestConservation:

    def test_quantity_conserved_through_lifecycle(self, owners, vaccine, make_lot, superadmin):
        make_lot(owners["district"], vaccine.id, 30, days=20)
        make_lot(owners["district"], vaccine.id, 30, days=50)
        total = 60

        t1 = transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 25, scope=superadmin)
        t2 = transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc2"], 20, scope=superadmin)
        db.session.commit()
        assert _total_valid(vaccine.id) + _in_flight(vaccine.id) == total

        transfer_service.confirm_transfer(t1.id, scope=superadmin)
        db.session.commit()
        assert _total_valid(vaccine.id) + _in_flight(vaccine.id) == total

        t3 = transfer_service.propose_transfer(vaccine.id, owners["hc1"], owners["hc3"], 10, scope=superadmin)
        transfer_service.reject_transfer(t2.id, scope=superadmin)
        db.session.commit()
        assert _total_valid(vaccine.id) + _in_flight(vaccine.id) == total

        transfer_service.cancel_transfer(t3.id, scope=superadmin)
        db.session.commit()
        assert _total_valid(vaccine.id) == total
        assert db.session.query(StockTransfer).count() == 1


class TestListings:

    def test_pending_by_direction(self, owners, vaccine, make_lot, superadmin):
        make_lot(owners["district"], vaccine.id, 30)
        make_lot(owners["hc1"], vaccine.id, 30)
        down = transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 5, scope=superadmin)
        up = transfer_service.propose_transfer(vaccine.id, owners["hc1"], owners["district"], 5, scope=superadmin)
        db.session.commit()

        incoming = transfer_service.list_pending_transfers(owners["hc1"], direction="incoming")
        outgoing = transfer_service.list_pending_transfers(owners["hc1"], direction="outgoing")
        both = transfer_service.list_pending_transfers(owners["hc1"], direction="all")

        assert [t.id for t in incoming] == [down.id]
        assert [t.id for t in outgoing] == [up.id]
        assert {t.id for t in both} == {down.id, up.id}

    def test_confirmed_transfers_leave_pending_list(self, owners, vaccine, make_lot, superadmin):
        make_lot(owners["district"], vaccine.id, 30)
        transfer = transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 5, scope=superadmin)
        transfer_service.confirm_transfer(transfer.id, scope=superadmin)
        db.session.commit()

        assert transfer_service.list_pending_transfers(owners["hc1"]) == []

    def test_bad_direction(self, owners):
        with pytest.raises(ValueError):
            transfer_service.list_pending_transfers(owners["hc1"], direction="sideways")

    def test_serialize_includes_lines(self, owners, vaccine, make_lot, superadmin):
        make_lot(owners["district"], vaccine.id, 30)
        transfer = transfer_service.propose_transfer(vaccine.id, owners["district"], owners["hc1"], 5, scope=superadmin)
        db.session.commit()

        data = transfer_service.serialize_transfer(transfer)

        assert data["status"] == "PENDING"
        assert data["from_owner"] == {"level": "DISTRICT", "id": owners["district"].id}
        assert [line["quantity_reserved"] for line in data["lots"]] == [5]
