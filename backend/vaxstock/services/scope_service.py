"""
Actor scope: which part of the administrative tree a caller may act on.

WHY: Every core operation receives the caller's scope as an explicit
argument instead of reading it from request-global state. The HTTP layer
builds it from headers set by the auth gateway; the CLI builds a
SUPERADMIN scope.

RULES:
- SUPERADMIN and NATIONAL scopes cover every owner.
- A REGIONAL/DISTRICT/HEALTHCENTER scope covers its own entity and every
  entity below it.
- Deleting an administrative entity needs a scope that covers a strict
  ancestor of it (or SUPERADMIN/NATIONAL); nobody deletes their own entity.
- Deleting a vaccine needs SUPERADMIN or NATIONAL.
"""
from __future__ import annotations

from dataclasses import dataclass

from ..errors import StockLedgerError, NotFoundError
from ..extensions import db
from ..models import Region, Commune, District, HealthCenter
from ..owners import Owner, OwnerLevel, EntityType


SCOPE_SUPERADMIN = "SUPERADMIN"
SCOPE_NATIONAL = "NATIONAL"
SCOPE_REGIONAL = "REGIONAL"
SCOPE_DISTRICT = "DISTRICT"
SCOPE_HEALTHCENTER = "HEALTHCENTER"

SCOPE_LEVELS = {
    SCOPE_SUPERADMIN,
    SCOPE_NATIONAL,
    SCOPE_REGIONAL,
    SCOPE_DISTRICT,
    SCOPE_HEALTHCENTER,
}

_GLOBAL_LEVELS = {SCOPE_SUPERADMIN, SCOPE_NATIONAL}


class ScopeError(StockLedgerError):
    """Raised when the caller's scope does not cover the target."""
    http_status = 403


class OwnerNotFoundError(NotFoundError):
    """Raised when an Owner references an entity that does not exist."""
    pass


@dataclass(frozen=True)
class ActorScope:
    level: str
    entity_id: int | None = None
    user_id: int | None = None

    def __post_init__(self):
        level = str(self.level).upper()
        if level not in SCOPE_LEVELS:
            raise ValueError(f"unknown scope level: {self.level!r}")
        object.__setattr__(self, "level", level)
        if level in _GLOBAL_LEVELS:
            object.__setattr__(self, "entity_id", None)
        elif self.entity_id is None:
            raise ValueError(f"{level} scope requires an entity id")
        else:
            object.__setattr__(self, "entity_id", int(self.entity_id))

    @classmethod
    def superadmin(cls, user_id: int | None = None) -> "ActorScope":
        return cls(SCOPE_SUPERADMIN, None, user_id)

    @classmethod
    def for_owner(cls, owner: Owner, user_id: int | None = None) -> "ActorScope":
        return cls(owner.level.value, owner.id, user_id)

    @property
    def is_global(self) -> bool:
        return self.level in _GLOBAL_LEVELS

    def as_owner(self) -> Owner | None:
        """The owner this scope acts as; None for SUPERADMIN."""
        if self.level == SCOPE_SUPERADMIN:
            return None
        return Owner(OwnerLevel(self.level), self.entity_id)

    def to_dict(self) -> dict:
        return {"level": self.level, "entity_id": self.entity_id, "user_id": self.user_id}


def entity_path(entity_type: EntityType, entity_id: int) -> dict | None:
    """
    Resolve the administrative ancestry of an entity.

    Returns {"region": id, "commune": id, "district": id, "health_center": id}
    with the keys that apply to entity_type, or None if the entity does not
    exist.
    """
    if entity_type is EntityType.HEALTHCENTER:
        row = (
            db.session.query(HealthCenter.id, District.id, Commune.id, Commune.region_id)
            .join(District, District.id == HealthCenter.district_id)
            .join(Commune, Commune.id == District.commune_id)
            .filter(HealthCenter.id == entity_id)
            .first()
        )
        if row is None:
            return None
        return {"health_center": row[0], "district": row[1], "commune": row[2], "region": row[3]}

    if entity_type is EntityType.DISTRICT:
        row = (
            db.session.query(District.id, Commune.id, Commune.region_id)
            .join(Commune, Commune.id == District.commune_id)
            .filter(District.id == entity_id)
            .first()
        )
        if row is None:
            return None
        return {"district": row[0], "commune": row[1], "region": row[2]}

    if entity_type is EntityType.COMMUNE:
        row = db.session.query(Commune.id, Commune.region_id).filter(Commune.id == entity_id).first()
        if row is None:
            return None
        return {"commune": row[0], "region": row[1]}

    if entity_type is EntityType.REGION:
        row = db.session.query(Region.id).filter(Region.id == entity_id).first()
        if row is None:
            return None
        return {"region": row[0]}

    raise ValueError(f"{entity_type.value} is not an administrative entity")


_OWNER_ENTITY = {
    OwnerLevel.REGIONAL: EntityType.REGION,
    OwnerLevel.DISTRICT: EntityType.DISTRICT,
    OwnerLevel.HEALTHCENTER: EntityType.HEALTHCENTER,
}


def owner_path(owner: Owner) -> dict:
    """Ancestry of an owner; raises OwnerNotFoundError for dangling ids."""
    if owner.level is OwnerLevel.NATIONAL:
        return {}
    path = entity_path(_OWNER_ENTITY[owner.level], owner.id)
    if path is None:
        raise OwnerNotFoundError(f"{owner} does not exist")
    return path


def require_owner_exists(owner: Owner) -> Owner:
    owner_path(owner)
    return owner


def _path_covered(scope: ActorScope, path: dict) -> bool:
    if scope.is_global:
        return True
    if scope.level == SCOPE_REGIONAL:
        return path.get("region") == scope.entity_id
    if scope.level == SCOPE_DISTRICT:
        return path.get("district") == scope.entity_id
    if scope.level == SCOPE_HEALTHCENTER:
        return path.get("health_center") == scope.entity_id
    return False


def scope_covers(scope: ActorScope, owner: Owner) -> bool:
    """True when owner is the scope's entity or lies below it."""
    if scope.is_global:
        return True
    if owner.level is OwnerLevel.NATIONAL:
        return False
    return _path_covered(scope, owner_path(owner))


def require_scope_covers(scope: ActorScope, owner: Owner, action: str = "act on") -> None:
    if not scope_covers(scope, owner):
        raise ScopeError(f"{scope.level} scope cannot {action} stock of {owner}")


def require_scope_for_entity_deletion(scope: ActorScope, entity_type: EntityType, entity_id: int) -> None:
    """
    Check that scope may delete an administrative entity or a vaccine.

    Lots are checked by the caller against the lot owner instead.
    """
    if scope.is_global:
        return
    if entity_type in (EntityType.VACCINE, EntityType.REGION):
        raise ScopeError(f"{scope.level} scope cannot delete a {entity_type.value.lower()}")

    path = entity_path(entity_type, entity_id)
    if path is None:
        # Existence is reported by the caller (not found / already deleted)
        return

    # The scope must sit strictly above the entity
    own_key = {
        EntityType.COMMUNE: "commune",
        EntityType.DISTRICT: "district",
        EntityType.HEALTHCENTER: "health_center",
    }[entity_type]
    scope_key = {
        SCOPE_REGIONAL: "region",
        SCOPE_DISTRICT: "district",
        SCOPE_HEALTHCENTER: "health_center",
    }[scope.level]
    keys = ["region", "commune", "district", "health_center"]
    if keys.index(scope_key) >= keys.index(own_key) or not _path_covered(scope, path):
        raise ScopeError(f"{scope.level} scope cannot delete {entity_type.value} {entity_id}")
