"""Tests for the Rule Element Checker and the cover service."""

from visioner_kernel.catalog.presets import build_preset_item
from visioner_kernel.checker.cover import attack_edge, combine_cover, is_ranged_attack
from visioner_kernel.models.results import ProvidedCover
from visioner_kernel.models.rule_element import EffectItem
from visioner_kernel.models.scene import ActorState, TokenState
from visioner_kernel.operations.visibility import REPLACEMENT_FLAG
from visioner_kernel.rule_element.service import RuleElementService


def _make_token(token_id, x=0.0, y=0.0, traits=None, conditions=None, disposition=-1, pc=False):
    return TokenState(
        id=token_id,
        name=token_id.title(),
        x=x,
        y=y,
        disposition=disposition,
        actor=ActorState(
            id=f"actor-{token_id}",
            type="character" if pc else "npc",
            traits=traits or [],
            conditions=conditions or [],
            has_player_owner=pc,
        ),
    )


def _make_item(item_id, operations):
    return EffectItem(id=item_id, name=item_id, rules=[{"key": "PF2eVisionerEffect", "operations": operations}])


def _hero(**kwargs):
    return _make_token("hero", disposition=1, pc=True, **kwargs)


class _CheckerCase:
    def setup_method(self):
        self.service = RuleElementService()
        self.service.scene.upsert_token(_hero())
        self.service.scene.upsert_token(_make_token("goblin", x=5))
        self.service.scene.upsert_token(_make_token("orc", x=50))

    def token(self, token_id):
        return self.service.scene.get_token(token_id)

    def resolve(self, observer_id, target_id, current_state=None):
        return self.service.checker.resolve(self.token(observer_id), self.token(target_id), current_state)


class TestResolution(_CheckerCase):
    def test_nothing_active(self):
        assert self.resolve("goblin", "hero") is None

    def test_same_token(self):
        self.service.create_effect("hero", build_preset_item("blur", "blur-1"))
        assert self.resolve("hero", "hero") is None

    def test_override(self):
        self.service.create_effect("hero", build_preset_item("blur", "blur-1"))
        result = self.resolve("goblin", "hero")
        assert (result.state, result.type, result.priority) == ("concealed", "override", 100)
        assert self.resolve("hero", "goblin") is None

    def test_higher_priority_beats_mechanism_order(self):
        self.service.create_effect("hero", build_preset_item("blur", "blur-1"))
        self.service.create_effect("hero", _make_item("dist", [{
            "type": "distanceBasedVisibility",
            "distanceBands": [{"minDistance": 0, "state": "hidden"}],
            "priority": 200,
        }]))
        result = self.resolve("goblin", "hero")
        assert (result.state, result.type) == ("hidden", "distanceBasedVisibility")

    def test_equal_priority_uses_mechanism_order(self):
        self.service.create_effect("hero", build_preset_item("blur", "blur-1"))
        self.service.create_effect("hero", _make_item("dist", [{
            "type": "distanceBasedVisibility",
            "distanceBands": [{"minDistance": 0, "state": "hidden"}],
        }]))
        assert self.resolve("goblin", "hero").type == "override"

        results = self.service.checker.get_all(self.token("goblin"), self.token("hero"))
        assert [r.type for r in results] == ["override", "distanceBasedVisibility"]


class TestDistanceBands(_CheckerCase):
    def setup_method(self):
        super().setup_method()
        self.service.create_effect("hero", _make_item("dist", [{
            "type": "distanceBasedVisibility",
            "distanceBands": [
                {"minDistance": 0, "maxDistance": 30, "state": "observed"},
                {"minDistance": 30, "state": "concealed"},
            ],
        }]))

    def _at(self, x):
        self.service.scene.upsert_token(_make_token("scout", x=x))
        return self.resolve("scout", "hero")

    def test_boundary_belongs_to_upper_band(self):
        result = self._at(30)
        assert result.state == "concealed"
        assert result.distance == 30

    def test_just_inside_lower_band(self):
        assert self._at(29.999).state == "observed"

    def test_from_direction_lives_on_observer(self):
        self.service.create_effect("orc", _make_item("far-sight", [{
            "type": "distanceBasedVisibility",
            "direction": "from",
            "distanceBands": [{"minDistance": 40, "state": "hidden"}],
            "priority": 150,
        }]))
        assert self.resolve("orc", "hero").state == "hidden"
        assert self.resolve("orc", "goblin").state == "hidden"
        assert self.resolve("hero", "orc") is None


class TestDistanceFallback(_CheckerCase):
    def test_conditional_fallback_outside_bands(self):
        self.service.scene.upsert_token(_hero(conditions=["invisible"]))
        self.service.create_effect("hero", _make_item("mix", [
            {"type": "distanceBasedVisibility", "distanceBands": [{"minDistance": 0, "maxDistance": 10, "state": "observed"}]},
            {"type": "conditionalState", "condition": "invisible", "thenState": "hidden"},
        ]))

        near = self.resolve("goblin", "hero")
        assert (near.state, near.type) == ("observed", "distanceBasedVisibility")

        far = self.resolve("orc", "hero")
        assert (far.state, far.type, far.condition_met) == ("hidden", "conditionalState", True)
        assert far.distance == 50
        assert far.source == "mix-effect/distanceBasedVisibility/0"


class TestConditionals(_CheckerCase):
    def test_live_condition(self):
        self.service.create_effect("hero", build_preset_item("faerie-fire", "ff-1"))
        result = self.resolve("goblin", "hero")
        assert (result.state, result.type, result.priority) == ("observed", "conditionalState", 110)
        assert result.condition_met is False

        self.service.scene.upsert_token(_hero(conditions=["invisible"]))
        result = self.resolve("goblin", "hero")
        assert (result.state, result.condition_met) == ("concealed", True)


class TestReplacement(_CheckerCase):
    def setup_method(self):
        super().setup_method()
        self.service.create_effect("hero", build_preset_item("blind-fight", "bf-1"))

    def test_rewrites_within_range(self):
        result = self.resolve("hero", "goblin", "undetected")
        assert (result.state, result.type) == ("hidden", "visibilityReplacement")
        assert result.distance == 5

    def test_out_of_range(self):
        assert self.resolve("hero", "orc", "undetected") is None

    def test_state_not_listed(self):
        assert self.resolve("hero", "goblin", "concealed") is None

    def test_reads_current_state_from_map(self):
        self.service.maps.set_visibility_between("hero", "goblin", "undetected")
        assert self.resolve("hero", "goblin").state == "hidden"

    def test_level_comparison_is_kept_but_not_gating(self):
        self.service.create_effect("orc", _make_item("lc", [{
            "type": "overrideVisibility",
            "fromStates": ["hidden", "undetected"],
            "toState": "hidden",
            "levelComparison": "gt",
            "direction": "from",
        }]))
        assert self.resolve("orc", "hero", "undetected").state == "hidden"
        assert self.resolve("orc", "hero", "hidden").state == "hidden"

        records = self.service.flags.get_flag("orc", REPLACEMENT_FLAG)
        assert [r["levelComparison"] for r in records.values()] == ["gt"]


class TestAuras(_CheckerCase):
    def setup_method(self):
        super().setup_method()
        self.service.scene.upsert_token(_make_token("cloud", x=0, y=100))
        self.service.scene.upsert_token(_make_token("inside", x=10, y=100))
        self.service.scene.upsert_token(_make_token("also-inside", x=0, y=115))
        self.service.scene.upsert_token(_make_token("outside", x=60, y=100))
        self.service.create_effect("cloud", build_preset_item("obscuring-mist", "mist-1"))

    def test_across_the_edge(self):
        result = self.resolve("inside", "outside")
        assert (result.state, result.type) == ("concealed", "auraVisibility")
        assert self.resolve("outside", "inside").state == "concealed"

    def test_same_side(self):
        assert self.resolve("inside", "also-inside") is None

    def test_owner_counts_as_inside(self):
        assert self.resolve("cloud", "outside").state == "concealed"

    def test_source_exempt(self):
        self.service.create_effect("hero", _make_item("halo", [{
            "type": "auraVisibility", "auraRadius": 10, "insideOutsideState": "hidden",
        }]))
        assert self.resolve("hero", "orc") is None
        assert self.resolve("goblin", "orc").state == "hidden"


class TestCoverService(_CheckerCase):
    def setup_method(self):
        super().setup_method()
        self.service.scene.upsert_token(TokenState(id="wall", name="Wall", x=2))
        self.cover = self.service.cover

    def test_pinned_cover(self):
        self.service.create_effect("hero", _make_item("shield", [{"type": "overrideCover", "state": "standard"}]))
        pinned = self.cover.get_cover_from_rule_elements(self.token("goblin"), self.token("hero"))
        assert (pinned.state, pinned.source) == ("standard", "shield-effect/overrideCover/0")
        assert self.cover.get_cover_from_rule_elements(self.token("hero"), self.token("goblin")) is None

    def test_blocker_denied(self):
        self.service.create_effect("hero", _make_item("exposed", [{
            "type": "overrideCover", "state": "none", "targets": "specific", "tokenIds": ["wall"],
        }]))
        permission = self.cover.can_token_provide_cover_to_target(self.token("wall"), self.token("hero"))
        assert not permission.allowed
        assert permission.rule_element["blockerId"] == "wall"
        assert permission.rule_element["source"] == "exposed-effect/overrideCover/0"

    def test_unrelated_blocker_allowed(self):
        assert self.cover.can_token_provide_cover_to_target(self.token("goblin"), self.token("hero")).allowed

    def test_ranged_only_rule(self):
        self.service.create_effect("hero", _make_item("arrows", [{
            "type": "overrideCover",
            "state": "none",
            "targets": "specific",
            "tokenIds": ["wall"],
            "preventAutoCover": True,
            "predicate": ["item:ranged"],
        }]))
        wall, hero = self.token("wall"), self.token("hero")
        assert self.cover.can_token_provide_cover_to_target(wall, hero, ["item:melee"]).allowed
        assert not self.cover.can_token_provide_cover_to_target(wall, hero, ["item:ranged"]).allowed

    def test_provided_cover_needs_taken_cover_and_edge(self):
        self.service.scene.upsert_token(TokenState(id="barricade", x=0, y=-5))
        self.service.create_effect("barricade", build_preset_item("deployable-cover", "dc-1"))
        barricade, hero = self.token("barricade"), self.token("hero")
        north = _make_token("archer", x=0, y=-60)
        south = _make_token("brute", x=0, y=60)

        assert self.cover.get_cover_from_token(barricade, hero, north) is None

        self.service.flags.set_flag("hero", "hasTakenCover", True)
        provided = self.cover.get_cover_from_token(barricade, hero, north)
        assert (provided.state, provided.behavior) == ("standard", "replace")
        assert self.cover.get_cover_from_token(barricade, hero, south) is None


class TestCoverHelpers:
    def test_is_ranged_attack(self):
        assert is_ranged_attack(["item:trait:ranged"])
        assert not is_ranged_attack(["item:melee"])
        assert not is_ranged_attack(None)

    def test_attack_edge(self):
        provider = TokenState(id="p")
        assert attack_edge(provider, TokenState(id="a", y=-10)) == "north"
        assert attack_edge(provider, TokenState(id="a", y=10)) == "south"
        assert attack_edge(provider, TokenState(id="a", x=10, y=2)) == "east"
        assert attack_edge(provider, TokenState(id="a", x=-10)) == "west"

    def test_combine_cover(self):
        def provided(state, behavior):
            return ProvidedCover(state=state, source="s", behavior=behavior)

        assert combine_cover("greater", provided("lesser", "replace")) == "lesser"
        assert combine_cover("greater", provided("standard", "minimum")) == "greater"
        assert combine_cover("none", provided("standard", "minimum")) == "standard"
        assert combine_cover("lesser", provided("standard", "add")) == "greater"
        assert combine_cover("greater", provided("greater", "add")) == "greater"
