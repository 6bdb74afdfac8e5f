from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date


# Vaccination record categories
VACCINATION_SCHEDULED = "SCHEDULED"
VACCINATION_DUE = "DUE"
VACCINATION_LATE = "LATE"
VACCINATION_OVERDUE = "OVERDUE"
VACCINATION_COMPLETED = "COMPLETED"

VACCINATION_STATUSES = (
    VACCINATION_SCHEDULED,
    VACCINATION_DUE,
    VACCINATION_LATE,
    VACCINATION_OVERDUE,
    VACCINATION_COMPLETED,
)


class User(db.Model):
    """
    Agent or administrator attached to one administrative entity.

    Authentication lives outside this service; the row only records which
    entity the account belongs to so that deleting the entity removes it.
    """
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    first_name = db.Column(db.String(120), nullable=True)
    last_name = db.Column(db.String(120), nullable=True)

    # NATIONAL, REGIONAL, DISTRICT, AGENT, SUPERADMIN
    role = db.Column(db.String(32), nullable=False, index=True)

    region_id = db.Column(db.Integer, db.ForeignKey("regions.id"), nullable=True, index=True)
    district_id = db.Column(db.Integer, db.ForeignKey("districts.id"), nullable=True, index=True)
    health_center_id = db.Column(db.Integer, db.ForeignKey("health_centers.id"), nullable=True, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} role={self.role}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role,
            "region_id": self.region_id,
            "district_id": self.district_id,
            "health_center_id": self.health_center_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Child(db.Model):
    __tablename__ = "children"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    birth_date = db.Column(db.Date, nullable=True)
    health_center_id = db.Column(db.Integer, db.ForeignKey("health_centers.id"), nullable=False, index=True)

    # Denormalized pointer to the earliest SCHEDULED vaccination
    next_appointment_at = db.Column(db.DateTime(timezone=True), nullable=True)
    next_vaccine_id = db.Column(db.Integer, db.ForeignKey("vaccines.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Child id={self.id} health_center_id={self.health_center_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "birth_date": to_iso_date(self.birth_date),
            "health_center_id": self.health_center_id,
            "next_appointment_at": to_utc_z(self.next_appointment_at),
            "next_vaccine_id": self.next_vaccine_id,
            "created_at": to_utc_z(self.created_at),
        }


class ChildVaccination(db.Model):
    """
    One vaccination record of a child.

    status is one of SCHEDULED, DUE, LATE, OVERDUE, COMPLETED. SCHEDULED rows
    are appointments and may hold a StockReservation.
    """
    __tablename__ = "child_vaccinations"
    __table_args__ = (
        db.Index("ix_child_vaccinations_child_status", "child_id", "status"),
        db.Index("ix_child_vaccinations_vaccine_status", "vaccine_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    child_id = db.Column(db.Integer, db.ForeignKey("children.id"), nullable=False, index=True)
    vaccine_id = db.Column(db.Integer, db.ForeignKey("vaccines.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, index=True)
    dose = db.Column(db.Integer, nullable=False, default=1)
    scheduled_for = db.Column(db.DateTime(timezone=True), nullable=True)
    administered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "child_id": self.child_id,
            "vaccine_id": self.vaccine_id,
            "status": self.status,
            "dose": self.dose,
            "scheduled_for": to_utc_z(self.scheduled_for),
            "administered_at": to_utc_z(self.administered_at),
            "created_at": to_utc_z(self.created_at),
        }


class VisitRecord(db.Model):
    """Visit / consultation log row for a child or a health center."""
    __tablename__ = "visit_records"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    child_id = db.Column(db.Integer, db.ForeignKey("children.id"), nullable=True, index=True)
    health_center_id = db.Column(db.Integer, db.ForeignKey("health_centers.id"), nullable=True, index=True)
    vaccine_id = db.Column(db.Integer, db.ForeignKey("vaccines.id"), nullable=True, index=True)
    notes = db.Column(db.Text, nullable=True)
    recorded_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "child_id": self.child_id,
            "health_center_id": self.health_center_id,
            "vaccine_id": self.vaccine_id,
            "notes": self.notes,
            "recorded_at": to_utc_z(self.recorded_at),
        }
