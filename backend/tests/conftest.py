"""
Pytest fixtures for vaccine stock ledger tests.

Provides test database setup, a small administrative tree, vaccines and
helpers to seed lots and appointments.
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from vaxstock import create_app
from vaxstock.extensions import db
from vaxstock.models import (
    Region,
    Commune,
    District,
    HealthCenter,
    Vaccine,
    User,
    Child,
    ChildVaccination,
)
from vaxstock.models.people import VACCINATION_SCHEDULED
from vaxstock.owners import Owner
from vaxstock.services import lot_service, reservation_service
from vaxstock.services.scope_service import ActorScope
from vaxstock.time_utils import today


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STOCK_LAZY_EXPIRY': True,
        'DB_RETRY_ATTEMPTS': 3,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def superadmin():
    return ActorScope.superadmin(user_id=1)


@pytest.fixture(scope='function')
def tree(db_session):
    """
    Two regions:

    North -> Commune A -> District D1 -> HC1, HC2
    South -> Commune B -> District D2 -> HC3
    """
    north = Region(name="North")
    south = Region(name="South")
    db_session.add_all([north, south])
    db_session.flush()

    commune_a = Commune(name="Commune A", region_id=north.id)
    commune_b = Commune(name="Commune B", region_id=south.id)
    db_session.add_all([commune_a, commune_b])
    db_session.flush()

    d1 = District(name="District 1", commune_id=commune_a.id)
    d2 = District(name="District 2", commune_id=commune_b.id)
    db_session.add_all([d1, d2])
    db_session.flush()

    hc1 = HealthCenter(name="HC 1", address="1 Main St", district_id=d1.id)
    hc2 = HealthCenter(name="HC 2", address="2 Main St", district_id=d1.id)
    hc3 = HealthCenter(name="HC 3", address="3 Main St", district_id=d2.id)
    db_session.add_all([hc1, hc2, hc3])
    db_session.commit()

    return SimpleNamespace(
        north=north,
        south=south,
        commune_a=commune_a,
        commune_b=commune_b,
        d1=d1,
        d2=d2,
        hc1=hc1,
        hc2=hc2,
        hc3=hc3,
    )


@pytest.fixture(scope='function')
def vaccine(db_session):
    v = Vaccine(name="BCG", description="Tuberculosis", doses_required=1)
    db_session.add(v)
    db_session.commit()
    return v


@pytest.fixture(scope='function')
def other_vaccine(db_session):
    v = Vaccine(name="Polio", description="Oral polio", doses_required=3)
    db_session.add(v)
    db_session.commit()
    return v



def days_from_today(days: int):
    return today() + timedelta(days=days)


@pytest.fixture(scope='function')
def make_lot(db_session):
    """Receive a lot expiring `days` from today and commit."""
    def _make(owner: Owner, vaccine_id: int, quantity: int, days: int = 90):
        lot = lot_service.receive_lot(
            owner,
            vaccine_id,
            quantity,
            days_from_today(days),
            scope=ActorScope.superadmin(),
        )
        db_session.commit()
        return lot
    return _make


@pytest.fixture(scope='function')
def make_child(db_session):
    def _make(health_center_id: int, first_name: str = "Ada") -> Child:
        child = Child(first_name=first_name, last_name="Test", health_center_id=health_center_id)
        db_session.add(child)
        db_session.commit()
        return child
    return _make


@pytest.fixture(scope='function')
def make_vaccination(db_session):
    def _make(child: Child, vaccine_id: int, status: str, days: int = 10) -> ChildVaccination:
        record = ChildVaccination(
            child_id=child.id,
            vaccine_id=vaccine_id,
            status=status,
            scheduled_for=datetime.combine(days_from_today(days), datetime.min.time()),
        )
        db_session.add(record)
        db_session.commit()
        return record
    return _make


@pytest.fixture(scope='function')
def make_appointment(db_session, make_vaccination):
    """SCHEDULED vaccination holding one reserved dose at the child's center."""
    def _make(child: Child, vaccine_id: int, days: int = 10, reserve: bool = True) -> ChildVaccination:
        record = make_vaccination(child, vaccine_id, VACCINATION_SCHEDULED, days)
        if reserve:
            reservation_service.reserve_dose(
                child.health_center_id,
                vaccine_id,
                record.id,
                appointment_date=record.scheduled_for,
            )
        reservation_service.refresh_next_appointment(child.id)
        db_session.commit()
        return record
    return _make


@pytest.fixture(scope='function')
def make_user(db_session):
    def _make(email: str, role: str, **entity) -> User:
        user = User(email=email, role=role, **entity)
        db_session.add(user)
        db_session.commit()
        return user
    return _make


def lot_quantity(lot_id: int) -> int:
    db.session.expire_all()
    return lot_service.get_lot(lot_id).quantity


def aggregate(owner: Owner, vaccine_id: int) -> int:
    db.session.expire_all()
    return lot_service.get_aggregate_quantity(owner, vaccine_id)


@pytest.fixture(scope='function')
def read_stock():
    """Fresh reads of lot and aggregate quantities."""
    return SimpleNamespace(lot=lot_quantity, aggregate=aggregate)
