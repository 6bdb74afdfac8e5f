# Overview: Pytest coverage for lot storage, FEFO allocation and expiration.

"""
Lot Store Tests

Covers:
- receiving lots and the aggregate invariant
- FEFO ordering (expiration, then id)
- manual adjustments that may not drive a lot negative
- the expiration sweep
- deleting a lot that transfers still point at
"""

from datetime import timedelta

import pytest
from sqlalchemy import func

from vaxstock.extensions import db
from vaxstock.models import StockLot, AggregateStock, EventLog
from vaxstock.models.stock import LOT_STATUS_VALID, LOT_STATUS_EXPIRED
from vaxstock.owners import Owner
from vaxstock.services import lot_service, transfer_service
from vaxstock.services.lot_service import (
    InsufficientQuantityError,
    InsufficientStockError,
    LotNotFoundError,
    VaccineNotFoundError,
)
from vaxstock.services.scope_service import ActorScope, ScopeError, OwnerNotFoundError
from vaxstock.time_utils import today


def _valid_sum(owner: Owner, vaccine_id: int) -> int:
    return int(
        db.session.query(func.coalesce(func.sum(StockLot.quantity), 0))
        .filter(
            StockLot.owned_by(owner),
            StockLot.vaccine_id == vaccine_id,
            StockLot.status == LOT_STATUS_VALID,
        )
        .scalar()
    )


class TestReceiveLot:

    def test_receive_creates_valid_lot_and_aggregate(self, tree, vaccine, make_lot, read_stock):
        owner = Owner.district(tree.d1.id)
        lot = make_lot(owner, vaccine.id, 40, days=60)

        assert lot.status == LOT_STATUS_VALID
        assert lot.owner == owner
        assert read_stock.aggregate(owner, vaccine.id) == 40

    def test_receive_past_expiration_is_expired_and_not_aggregated(self, tree, vaccine, make_lot, read_stock):
        owner = Owner.district(tree.d1.id)
        make_lot(owner, vaccine.id, 10, days=30)
        expired = make_lot(owner, vaccine.id, 5, days=-1)

        assert expired.status == LOT_STATUS_EXPIRED
        assert read_stock.aggregate(owner, vaccine.id) == 10

    def test_receive_national_owner(self, db_session, vaccine, make_lot, read_stock):
        lot = make_lot(Owner.national(), vaccine.id, 100)

        assert lot.owner_id is None
        assert read_stock.aggregate(Owner.national(), vaccine.id) == 100

    def test_receive_logs_event(self, tree, vaccine, make_lot):
        lot = make_lot(Owner.regional(tree.north.id), vaccine.id, 12)

        event = db.session.query(EventLog).filter_by(event_type="lot.received", entity_id=lot.id).one()
        assert event.payload_dict()["quantity"] == 12

    def test_receive_unknown_owner(self, db_session, vaccine, superadmin):
        with pytest.raises(OwnerNotFoundError):
            lot_service.receive_lot(Owner.district(9999), vaccine.id, 5, today(), scope=superadmin)

    def test_receive_unknown_vaccine(self, tree, superadmin):
        with pytest.raises(VaccineNotFoundError):
            lot_service.receive_lot(Owner.district(tree.d1.id), 9999, 5, today(), scope=superadmin)

    def test_receive_outside_scope(self, tree, vaccine):
        scope = ActorScope("REGIONAL", tree.south.id)
        with pytest.raises(ScopeError):
            lot_service.receive_lot(Owner.district(tree.d1.id), vaccine.id, 5, today(), scope=scope)

    @pytest.mark.parametrize("quantity", [0, -3, True, 2.5, "4"])
    def test_receive_rejects_bad_quantity(self, tree, vaccine, superadmin, quantity):
        with pytest.raises(ValueError):
            lot_service.receive_lot(Owner.district(tree.d1.id), vaccine.id, quantity, today(), scope=superadmin)


class TestFefo:

    def test_valid_lots_ordered_by_expiration_then_id(self, tree, vaccine, make_lot):
        owner = Owner.district(tree.d1.id)
        late = make_lot(owner, vaccine.id, 5, days=60)
        first = make_lot(owner, vaccine.id, 5, days=30)
        second = make_lot(owner, vaccine.id, 5, days=30)

        lots = lot_service.list_valid_lots(owner, vaccine.id)

        assert [lot.id for lot in lots] == [first.id, second.id, late.id]

    def test_valid_lots_skip_empty_and_expired(self, tree, vaccine, make_lot, superadmin):
        owner = Owner.district(tree.d1.id)
        emptied = make_lot(owner, vaccine.id, 3, days=10)
        make_lot(owner, vaccine.id, 3, days=-2)
        kept = make_lot(owner, vaccine.id, 3, days=20)

        lot_service.adjust_quantity(emptied.id, -3, scope=superadmin)
        db.session.commit()

        assert [lot.id for lot in lot_service.list_valid_lots(owner, vaccine.id)] == [kept.id]

    def test_lot_past_date_excluded_before_sweep(self, tree, vaccine, make_lot):
        owner = Owner.district(tree.d1.id)
        soon = make_lot(owner, vaccine.id, 3, days=5)
        later = make_lot(owner, vaccine.id, 3, days=20)

        lots = lot_service.list_valid_lots(owner, vaccine.id, as_of=today() + timedelta(days=10))

        assert soon.status == LOT_STATUS_VALID
        assert [lot.id for lot in lots] == [later.id]

    def test_allocate_spans_lots_closest_expiry_first(self, tree, vaccine, make_lot):
        owner = Owner.district(tree.d1.id)
        l2 = make_lot(owner, vaccine.id, 10, days=60)
        l1 = make_lot(owner, vaccine.id, 5, days=30)

        plan = lot_service.allocate_fefo(owner, vaccine.id, 8)

        assert [(lot.id, take) for lot, take in plan] == [(l1.id, 5), (l2.id, 3)]

    def test_allocate_insufficient_returns_no_plan(self, tree, vaccine, make_lot):
        owner = Owner.district(tree.d1.id)
        make_lot(owner, vaccine.id, 4, days=30)
        make_lot(owner, vaccine.id, 4, days=-1)

        with pytest.raises(InsufficientStockError) as exc:
            lot_service.allocate_fefo(owner, vaccine.id, 5)

        assert exc.value.requested == 5
        assert exc.value.available == 4


class TestAdjustQuantity:

    def test_debit_and_credit(self, tree, vaccine, make_lot, superadmin, read_stock):
        owner = Owner.health_center(tree.hc1.id)
        lot = make_lot(owner, vaccine.id, 10)

        lot_service.adjust_quantity(lot.id, -4, scope=superadmin, note="broken vials")
        lot_service.adjust_quantity(lot.id, 2, scope=superadmin)
        db.session.commit()

        assert read_stock.lot(lot.id) == 8
        assert read_stock.aggregate(owner, vaccine.id) == 8

    def test_debit_below_zero_rejected(self, tree, vaccine, make_lot, superadmin, read_stock):
        lot = make_lot(Owner.health_center(tree.hc1.id), vaccine.id, 3)

        with pytest.raises(InsufficientQuantityError):
            lot_service.adjust_quantity(lot.id, -4, scope=superadmin)
        db.session.rollback()

        assert read_stock.lot(lot.id) == 3

    @pytest.mark.parametrize("delta", [0, True, 1.0])
    def test_invalid_delta(self, tree, vaccine, make_lot, superadmin, delta):
        lot = make_lot(Owner.health_center(tree.hc1.id), vaccine.id, 3)

        with pytest.raises(ValueError):
            lot_service.adjust_quantity(lot.id, delta, scope=superadmin)

    def test_unknown_lot(self, db_session, superadmin):
        with pytest.raises(LotNotFoundError):
            lot_service.adjust_quantity(424242, -1, scope=superadmin)

    def test_sibling_scope_cannot_adjust(self, tree, vaccine, make_lot):
        lot = make_lot(Owner.health_center(tree.hc1.id), vaccine.id, 3)

        with pytest.raises(ScopeError):
            lot_service.adjust_quantity(lot.id, -1, scope=ActorScope("HEALTHCENTER", tree.hc2.id))


class TestExpirationSweep:

    def test_mark_expired_flips_and_recomputes(self, tree, vaccine, make_lot, read_stock):
        owner = Owner.district(tree.d1.id)
        short = make_lot(owner, vaccine.id, 6, days=3)
        make_lot(owner, vaccine.id, 4, days=60)

        flipped = lot_service.mark_expired(today() + timedelta(days=4))
        db.session.commit()

        assert [lot.id for lot in flipped] == [short.id]
        assert lot_service.get_lot(short.id).status == LOT_STATUS_EXPIRED
        assert read_stock.aggregate(owner, vaccine.id) == 4

    def test_mark_expired_is_idempotent(self, tree, vaccine, make_lot):
        make_lot(Owner.district(tree.d1.id), vaccine.id, 6, days=3)
        as_of = today() + timedelta(days=4)

        assert len(lot_service.mark_expired(as_of)) == 1
        db.session.commit()
        assert lot_service.mark_expired(as_of) == []

    def test_lot_expiring_today_is_still_valid(self, tree, vaccine, make_lot):
        lot = make_lot(Owner.district(tree.d1.id), vaccine.id, 6, days=0)

        assert lot_service.mark_expired() == []
        assert lot.status == LOT_STATUS_VALID


class TestAggregates:

    def test_aggregate_matches_valid_lots_after_mixed_operations(
        self, tree, vaccine, make_lot, superadmin, read_stock
    ):
        district = Owner.district(tree.d1.id)
        hc = Owner.health_center(tree.hc1.id)
        a = make_lot(district, vaccine.id, 20, days=30)
        make_lot(district, vaccine.id, 15, days=90)
        make_lot(district, vaccine.id, 7, days=-5)

        transfer = transfer_service.propose_transfer(vaccine.id, district, hc, 25, scope=superadmin)
        db.session.commit()
        transfer_service.confirm_transfer(transfer.id, scope=superadmin)
        lot_service.adjust_quantity(a.id, 3, scope=superadmin)
        db.session.commit()

        for owner in (district, hc):
            assert read_stock.aggregate(owner, vaccine.id) == _valid_sum(owner, vaccine.id)
        assert read_stock.aggregate(district, vaccine.id) == 13
        assert read_stock.aggregate(hc, vaccine.id) == 25

    def test_recompute_all_repairs_drift(self, tree, vaccine, make_lot, read_stock):
        owner = Owner.district(tree.d1.id)
        make_lot(owner, vaccine.id, 9)
        db.session.query(AggregateStock).update({AggregateStock.quantity: 1234}, synchronize_session=False)
        db.session.commit()

        touched = lot_service.recompute_all_aggregates()
        db.session.commit()

        assert touched == 1
        assert read_stock.aggregate(owner, vaccine.id) == 9

    def test_owner_stock_read(self, tree, vaccine, other_vaccine, make_lot):
        owner = Owner.district(tree.d1.id)
        make_lot(owner, vaccine.id, 9)
        make_lot(owner, other_vaccine.id, 2)

        data = lot_service.get_owner_stock(owner, vaccine.id)

        assert data["owner"] == {"level": "DISTRICT", "id": tree.d1.id}
        assert [s["quantity"] for s in data["stocks"]] == [9]
        assert len(data["lots"]) == 1


class TestDeleteLot:

    def test_pending_line_keeps_snapshot(self, tree, vaccine, make_lot, superadmin):
        district = Owner.district(tree.d1.id)
        lot = make_lot(district, vaccine.id, 10, days=45)
        transfer = transfer_service.propose_transfer(
            vaccine.id, district, Owner.health_center(tree.hc1.id), 4, scope=superadmin
        )
        db.session.commit()
        lot_id, expiration = lot.id, lot.expiration

        snapshot = lot_service.delete_lot(lot_id)
        db.session.commit()

        line = transfer_service.get_transfer(transfer.id).lots[0]
        assert snapshot["id"] == lot_id
        assert line.lot_id is None
        assert line.expiration == expiration
        assert line.quantity_reserved == 4

    def test_derived_lots_survive(self, tree, vaccine, make_lot, superadmin, read_stock):
        district = Owner.district(tree.d1.id)
        hc = Owner.health_center(tree.hc1.id)
        lot = make_lot(district, vaccine.id, 10, days=45)
        transfer = transfer_service.propose_transfer(vaccine.id, district, hc, 4, scope=superadmin)
        transfer_service.confirm_transfer(transfer.id, scope=superadmin)
        db.session.commit()

        lot_service.delete_lot(lot.id)
        db.session.commit()

        derived = db.session.query(StockLot).filter(StockLot.owned_by(hc)).one()
        assert derived.source_lot_id is None
        assert derived.quantity == 4
        assert read_stock.aggregate(district, vaccine.id) == 0
