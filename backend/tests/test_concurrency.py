# Overview: Pytest coverage for optimistic locking and retry helpers.

import threading

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from vaxstock import create_app
from vaxstock.extensions import db
from vaxstock.models import Region, Commune, District, HealthCenter, Vaccine, StockLot, PendingStockTransfer
from vaxstock.owners import Owner
from vaxstock.services import lot_service, transfer_service
from vaxstock.services.concurrency import commit_with_retry, run_with_retry
from vaxstock.services.scope_service import ActorScope


class TestRunWithRetry:

    def test_retries_stale_data_then_succeeds(self, app):
        calls = []

        def _op():
            calls.append(1)
            if len(calls) < 3:
                raise StaleDataError("row changed underneath")
            return "ok"

        assert run_with_retry(_op, attempts=3, backoff_base=0) == "ok"
        assert len(calls) == 3

    def test_gives_up_after_attempts(self, app):
        calls = []

        def _op():
            calls.append(1)
            raise OperationalError("UPDATE", {}, Exception("database is locked"))

        with pytest.raises(OperationalError):
            run_with_retry(_op, attempts=2, backoff_base=0)
        assert len(calls) == 2

    def test_domain_errors_are_not_retried(self, app):
        calls = []

        def _op():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            run_with_retry(_op, attempts=3, backoff_base=0)
        assert len(calls) == 1


class TestVersionedLots:

    def test_lost_update_detected_and_retried(self, tree, vaccine, make_lot, read_stock):
        """A write based on a stale version fails and the retry re-reads the lot."""
        lot = make_lot(Owner.district(tree.d1.id), vaccine.id, 10)
        attempts = []

        def _op():
            current = lot_service.get_lot(lot.id, lock=True)
            if not attempts:
                # Another writer bumps the version after our read
                db.session.execute(
                    text("UPDATE stock_lots SET version_id = version_id + 1 WHERE id = :id"),
                    {"id": lot.id},
                )
            attempts.append(1)
            lot_service.debit_lot(current, 2)
            db.session.flush()
            return current

        run_with_retry(_op, attempts=3, backoff_base=0)
        db.session.commit()

        assert len(attempts) == 2
        assert read_stock.lot(lot.id) == 8


class TestCommitWithRetry:

    def test_failed_commit_reruns_the_work(self, tree, vaccine, superadmin, monkeypatch):
        real_commit = db.session.commit
        commits = []

        def flaky_commit():
            commits.append(1)
            if len(commits) == 1:
                raise OperationalError("COMMIT", {}, Exception("database is locked"))
            return real_commit()

        monkeypatch.setattr(db.session, "commit", flaky_commit)
        runs = []

        def _receive():
            runs.append(1)
            return lot_service.receive_lot(
                Owner.district(tree.d1.id), vaccine.id, 12, "2099-01-01", scope=superadmin
            )

        lot = commit_with_retry(_receive, attempts=3, backoff_base=0)
        monkeypatch.undo()

        assert len(runs) == 2
        db.session.expire_all()
        assert db.session.query(StockLot).count() == 1
        assert db.session.get(StockLot, lot.id).quantity == 12

    def test_commit_that_keeps_failing_saves_nothing(self, tree, vaccine, superadmin, monkeypatch):
        def locked_commit():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(db.session, "commit", locked_commit)

        with pytest.raises(OperationalError):
            commit_with_retry(
                lambda: lot_service.receive_lot(
                    Owner.district(tree.d1.id), vaccine.id, 12, "2099-01-01", scope=superadmin
                ),
                attempts=2,
                backoff_base=0,
            )
        monkeypatch.undo()
        db.session.rollback()

        assert db.session.query(StockLot).count() == 0


@pytest.fixture
def file_app(tmp_path):
    """App on a SQLite file so two threads get separate connections."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'ledger.sqlite3'}",
        'DB_RETRY_ATTEMPTS': 6,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


class TestConcurrentProposals:

    def _seed(self, app):
        with app.app_context():
            region = Region(name="North")
            db.session.add(region)
            db.session.flush()
            commune = Commune(name="Commune A", region_id=region.id)
            db.session.add(commune)
            db.session.flush()
            district = District(name="District 1", commune_id=commune.id)
            db.session.add(district)
            db.session.flush()
            hc1 = HealthCenter(name="HC 1", address="1 Main St", district_id=district.id)
            hc2 = HealthCenter(name="HC 2", address="2 Main St", district_id=district.id)
            vaccine = Vaccine(name="BCG", description="Tuberculosis", doses_required=1)
            db.session.add_all([hc1, hc2, vaccine])
            db.session.flush()
            lot = lot_service.receive_lot(
                Owner.district(district.id), vaccine.id, 10, "2099-01-01", scope=ActorScope.superadmin()
            )
            db.session.commit()
            return {
                "district": Owner.district(district.id),
                "receivers": [Owner.health_center(hc1.id), Owner.health_center(hc2.id)],
                "vaccine_id": vaccine.id,
                "lot_id": lot.id,
            }

    def test_parallel_proposals_cannot_double_spend(self, file_app):
        """Two proposals of 7 from a lot of 10: exactly one goes through."""
        seeded = self._seed(file_app)
        barrier = threading.Barrier(2)
        outcomes = []

        def _propose(receiver):
            with file_app.app_context():
                barrier.wait()
                try:
                    commit_with_retry(lambda: transfer_service.propose_transfer(
                        seeded["vaccine_id"], seeded["district"], receiver, 7, scope=ActorScope.superadmin(),
                    ))
                    outcomes.append("ok")
                except Exception as exc:
                    db.session.rollback()
                    outcomes.append(type(exc).__name__)

        threads = [threading.Thread(target=_propose, args=(receiver,)) for receiver in seeded["receivers"]]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert sorted(outcomes) == ["InsufficientStockError", "ok"]
        with file_app.app_context():
            assert db.session.get(StockLot, seeded["lot_id"]).quantity == 3
            assert db.session.query(PendingStockTransfer).count() == 1
