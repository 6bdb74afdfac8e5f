# backend/vaxstock/owners.py
"""
Stock ownership levels and the Owner value type.

An Owner is the (level, id) pair that identifies which administrative
entity holds a lot or an aggregate row. The NATIONAL owner is unique and
carries no id; every other level requires the id of a row in the table
named by OWNER_TABLES.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class OwnerLevel(str, Enum):
    NATIONAL = "NATIONAL"
    REGIONAL = "REGIONAL"
    DISTRICT = "DISTRICT"
    HEALTHCENTER = "HEALTHCENTER"


# Depth in the administrative tree (NATIONAL is the root)
OWNER_DEPTH = {
    OwnerLevel.NATIONAL: 0,
    OwnerLevel.REGIONAL: 1,
    OwnerLevel.DISTRICT: 2,
    OwnerLevel.HEALTHCENTER: 3,
}

OWNER_TABLES = {
    OwnerLevel.REGIONAL: "regions",
    OwnerLevel.DISTRICT: "districts",
    OwnerLevel.HEALTHCENTER: "health_centers",
}


@dataclass(frozen=True)
class Owner:
    level: OwnerLevel
    id: int | None = None

    def __post_init__(self):
        level = OwnerLevel(self.level)
        object.__setattr__(self, "level", level)
        if level is OwnerLevel.NATIONAL:
            object.__setattr__(self, "id", None)
        else:
            if self.id is None or isinstance(self.id, bool):
                raise ValueError(f"{level.value} owner requires an id")
            object.__setattr__(self, "id", int(self.id))

    @classmethod
    def national(cls) -> "Owner":
        return cls(OwnerLevel.NATIONAL)

    @classmethod
    def regional(cls, region_id: int) -> "Owner":
        return cls(OwnerLevel.REGIONAL, region_id)

    @classmethod
    def district(cls, district_id: int) -> "Owner":
        return cls(OwnerLevel.DISTRICT, district_id)

    @classmethod
    def health_center(cls, health_center_id: int) -> "Owner":
        return cls(OwnerLevel.HEALTHCENTER, health_center_id)

    @classmethod
    def from_dict(cls, data) -> "Owner":
        """Build an Owner from {"level": ..., "id": ...} request payloads."""
        if not isinstance(data, dict) or "level" not in data:
            raise ValueError("owner must be an object with a level")
        try:
            level = OwnerLevel(str(data["level"]).upper())
        except ValueError:
            raise ValueError(f"unknown owner level: {data['level']!r}")
        return cls(level, data.get("id"))

    @property
    def depth(self) -> int:
        return OWNER_DEPTH[self.level]

    def to_dict(self) -> dict:
        return {"level": self.level.value, "id": self.id}

    def __str__(self) -> str:
        if self.id is None:
            return self.level.value
        return f"{self.level.value}:{self.id}"


class EntityType(str, Enum):
    """Targets accepted by the deletion impact / cascade operations."""
    REGION = "REGION"
    COMMUNE = "COMMUNE"
    DISTRICT = "DISTRICT"
    HEALTHCENTER = "HEALTHCENTER"
    VACCINE = "VACCINE"
    LOT = "LOT"

    @classmethod
    def parse(cls, value) -> "EntityType":
        try:
            return cls(str(value).strip().upper().replace("-", "").replace("_", ""))
        except ValueError:
            raise ValueError(f"unknown entity type: {value!r}")
