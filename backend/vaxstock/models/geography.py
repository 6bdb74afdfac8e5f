from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Region(db.Model):
    __tablename__ = "regions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Region id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": to_utc_z(self.created_at),
        }


class Commune(db.Model):
    __tablename__ = "communes"
    __table_args__ = (
        db.UniqueConstraint("region_id", "name", name="uq_communes_region_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    region_id = db.Column(db.Integer, db.ForeignKey("regions.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    region = db.relationship("Region", backref=db.backref("communes", lazy=True))

    def __repr__(self) -> str:
        return f"<Commune id={self.id} name={self.name!r} region_id={self.region_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "region_id": self.region_id,
            "created_at": to_utc_z(self.created_at),
        }


class District(db.Model):
    __tablename__ = "districts"
    __table_args__ = (
        db.UniqueConstraint("commune_id", "name", name="uq_districts_commune_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    commune_id = db.Column(db.Integer, db.ForeignKey("communes.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    commune = db.relationship("Commune", backref=db.backref("districts", lazy=True))

    def __repr__(self) -> str:
        return f"<District id={self.id} name={self.name!r} commune_id={self.commune_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "commune_id": self.commune_id,
            "created_at": to_utc_z(self.created_at),
        }


class HealthCenter(db.Model):
    __tablename__ = "health_centers"
    __table_args__ = (
        db.UniqueConstraint("district_id", "name", name="uq_health_centers_district_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(160), nullable=False)
    address = db.Column(db.String(255), nullable=True)
    district_id = db.Column(db.Integer, db.ForeignKey("districts.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    district = db.relationship("District", backref=db.backref("health_centers", lazy=True))

    def __repr__(self) -> str:
        return f"<HealthCenter id={self.id} name={self.name!r} district_id={self.district_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "district_id": self.district_id,
            "created_at": to_utc_z(self.created_at),
        }
