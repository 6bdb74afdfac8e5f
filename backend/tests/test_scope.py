# Overview: Pytest coverage for actor scopes and owner values.

import pytest

from vaxstock.owners import Owner, OwnerLevel, EntityType
from vaxstock.services.scope_service import (
    ActorScope,
    OwnerNotFoundError,
    entity_path,
    owner_path,
    scope_covers,
)


class TestOwner:

    def test_national_drops_id(self):
        assert Owner(OwnerLevel.NATIONAL, 5).id is None
        assert Owner.national() == Owner.from_dict({"level": "national"})

    def test_non_national_requires_id(self):
        with pytest.raises(ValueError):
            Owner(OwnerLevel.DISTRICT)

    @pytest.mark.parametrize("payload", [None, {}, {"level": "PLANET", "id": 1}, "DISTRICT"])
    def test_from_dict_rejects_garbage(self, payload):
        with pytest.raises(ValueError):
            Owner.from_dict(payload)

    def test_owners_are_hashable_values(self):
        assert len({Owner.district(1), Owner.district(1), Owner.health_center(1)}) == 2

    @pytest.mark.parametrize("raw, expected", [
        ("health-center", EntityType.HEALTHCENTER),
        ("HEALTH_CENTER", EntityType.HEALTHCENTER),
        ("lot", EntityType.LOT),
    ])
    def test_entity_type_parse(self, raw, expected):
        assert EntityType.parse(raw) is expected


class TestActorScope:

    def test_global_scopes_have_no_entity(self):
        assert ActorScope("national", 9).entity_id is None
        assert ActorScope.superadmin().is_global

    def test_scoped_level_requires_entity(self):
        with pytest.raises(ValueError):
            ActorScope("DISTRICT")

    def test_unknown_level(self):
        with pytest.raises(ValueError):
            ActorScope("COMMUNE", 1)

    def test_as_owner(self):
        assert ActorScope("DISTRICT", 4).as_owner() == Owner.district(4)
        assert ActorScope.superadmin().as_owner() is None


class TestCoverage:

    def test_paths(self, tree):
        assert entity_path(EntityType.HEALTHCENTER, tree.hc1.id) == {
            "health_center": tree.hc1.id,
            "district": tree.d1.id,
            "commune": tree.commune_a.id,
            "region": tree.north.id,
        }
        assert entity_path(EntityType.DISTRICT, 9999) is None

    def test_dangling_owner(self, db_session):
        with pytest.raises(OwnerNotFoundError):
            owner_path(Owner.health_center(9999))

    def test_region_covers_its_subtree(self, tree):
        scope = ActorScope("REGIONAL", tree.north.id)

        assert scope_covers(scope, Owner.regional(tree.north.id))
        assert scope_covers(scope, Owner.district(tree.d1.id))
        assert scope_covers(scope, Owner.health_center(tree.hc2.id))
        assert not scope_covers(scope, Owner.health_center(tree.hc3.id))
        assert not scope_covers(scope, Owner.national())

    def test_health_center_covers_only_itself(self, tree):
        scope = ActorScope("HEALTHCENTER", tree.hc1.id)

        assert scope_covers(scope, Owner.health_center(tree.hc1.id))
        assert not scope_covers(scope, Owner.health_center(tree.hc2.id))
        assert not scope_covers(scope, Owner.district(tree.d1.id))

    def test_national_covers_everything(self, tree):
        scope = ActorScope("NATIONAL")

        assert scope_covers(scope, Owner.national())
        assert scope_covers(scope, Owner.health_center(tree.hc3.id))
