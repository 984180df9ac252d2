"""Tests for the visibility, cover and query-time operation handlers."""

import pytest

from visioner_kernel.ledger.store import DedupGuard, SourceLedger
from visioner_kernel.models.operation import (
    AuraVisibilityOperation,
    ConditionalStateOperation,
    DistanceBand,
    DistanceBasedVisibilityOperation,
    OverrideCoverOperation,
    OverrideVisibilityOperation,
    ProvideCoverOperation,
)
from visioner_kernel.models.scene import ActorState, TokenState
from visioner_kernel.operations.aura import AURA_FLAG, AuraVisibilityHandler
from visioner_kernel.operations.base import (
    ApplyContext,
    OperationConfigError,
    OperationHandler,
    OperationServices,
    flag_key,
)
from visioner_kernel.operations.cover import PROVIDES_COVER_FLAG, OverrideCoverHandler, ProvideCoverHandler
from visioner_kernel.operations.distance import DISTANCE_FLAG, DistanceBasedVisibilityHandler, select_band
from visioner_kernel.operations.override import OVERRIDE_FLAG, orient
from visioner_kernel.operations.registry import OperationDispatcher
from visioner_kernel.operations.visibility import (
    CONDITIONAL_FLAG,
    REPLACEMENT_FLAG,
    ConditionalStateHandler,
    OverrideVisibilityHandler,
)
from visioner_kernel.scene.recalculation import RecordingRecalculationTrigger
from visioner_kernel.scene.store import FlagStore, PerceptionMapStore, SceneStore


def _make_token(token_id, x=0.0, traits=None, conditions=None, disposition=-1, pc=False):
    return TokenState(
        id=token_id,
        name=token_id.title(),
        x=x,
        disposition=disposition,
        actor=ActorState(
            id=f"actor-{token_id}",
            type="character" if pc else "npc",
            traits=traits or [],
            conditions=conditions or [],
            has_player_owner=pc,
        ),
    )


def _make_services(*tokens):
    scene = SceneStore()
    for token in tokens:
        scene.upsert_token(token)
    flags = FlagStore()
    return OperationServices(
        scene=scene,
        flags=flags,
        ledger=SourceLedger(flags, scene, DedupGuard()),
        maps=PerceptionMapStore(),
        recalc=RecordingRecalculationTrigger(),
    )


def _flag_snapshot(services):
    return {t.id: services.flags.get_all(t.id) for t in services.scene.all_tokens()}


class TestOrientation:
    def test_to(self):
        assert orient("to", "hero", "goblin") == ("hero", "goblin", "goblin", "hero")

    def test_from(self):
        assert orient("from", "hero", "goblin") == ("goblin", "hero", "hero", "goblin")

    def test_flag_key_escapes_dots(self):
        assert flag_key("item.1/overrideVisibility/0") == "item___1/overrideVisibility/0"


class TestOverrideVisibility:
    def setup_method(self):
        self.hero = _make_token("hero", disposition=1, pc=True)
        self.goblin = _make_token("goblin", x=10, traits=["goblin"])
        self.ghoul = _make_token("ghoul", x=100, traits=["undead"])
        self.services = _make_services(self.hero, self.goblin, self.ghoul)
        self.handler = OverrideVisibilityHandler(self.services)
        self.maps = self.services.maps
        self.ledger = self.services.ledger

    def test_to_direction(self):
        self.handler.apply(OverrideVisibilityOperation(state="concealed"), self.hero)

        assert self.maps.get_visibility_between("goblin", "hero") == "concealed"
        assert self.maps.get_visibility_between("ghoul", "hero") == "concealed"
        assert self.maps.get_visibility_between("hero", "goblin") == "observed"

        sources = self.ledger.get_sources("hero", "visibility", "goblin")
        assert [s.id for s in sources] == ["overrideVisibility-hero"]
        assert sources[0].type == "overrideVisibility"

    def test_from_direction(self):
        self.handler.apply(OverrideVisibilityOperation(state="hidden", direction="from"), self.hero)

        assert self.maps.get_visibility_between("hero", "goblin") == "hidden"
        assert self.maps.get_visibility_between("goblin", "hero") == "observed"
        assert self.ledger.get_bucket_state("goblin", "visibility", "hero") == "hidden"

    def test_range_limit(self):
        self.handler.apply(OverrideVisibilityOperation(state="concealed", range=30), self.hero)
        assert self.maps.get_visibility_between("goblin", "hero") == "concealed"
        assert self.maps.get_visibility_between("ghoul", "hero") == "observed"

    def test_pair_predicate(self):
        op = OverrideVisibilityOperation(state="concealed", predicate=["target:trait:undead"])
        self.handler.apply(op, self.hero)
        assert self.maps.get_visibility_between("ghoul", "hero") == "concealed"
        assert self.maps.get_visibility_between("goblin", "hero") == "observed"

    def test_remove_restores_pre_apply_state(self):
        self.maps.set_visibility_between("goblin", "hero", "hidden")
        before = _flag_snapshot(self.services)
        op = OverrideVisibilityOperation(state="concealed")

        self.handler.apply(op, self.hero)
        self.handler.remove(op, self.hero)

        assert _flag_snapshot(self.services) == before
        assert self.maps.get_visibility_between("goblin", "hero") == "hidden"
        assert self.maps.get_visibility_between("ghoul", "hero") == "observed"

    def test_overlapping_sources_fall_back_to_remaining(self):
        low = OverrideVisibilityOperation(state="hidden", priority=10, source="low")
        high = OverrideVisibilityOperation(state="concealed", priority=50, source="high")
        self.handler.apply(low, self.hero)
        self.handler.apply(high, self.hero)
        assert self.maps.get_visibility_between("goblin", "hero") == "concealed"

        self.handler.remove(high, self.hero)
        assert self.maps.get_visibility_between("goblin", "hero") == "hidden"

        self.handler.remove(low, self.hero)
        assert self.maps.get_visibility_between("goblin", "hero") == "observed"

    def test_reapply_releases_pairs_no_longer_eligible(self):
        self.handler.apply(OverrideVisibilityOperation(state="concealed", source="s"), self.hero)
        self.handler.apply(OverrideVisibilityOperation(state="concealed", source="s", range=30), self.hero)

        assert self.maps.get_visibility_between("goblin", "hero") == "concealed"
        assert self.maps.get_visibility_between("ghoul", "hero") == "observed"
        record = self.services.flags.get_flag("hero", f"{OVERRIDE_FLAG}.s")
        assert record["affectedTokenIds"] == ["goblin"]

    def test_missing_state_raises(self):
        with pytest.raises(OperationConfigError):
            self.handler.apply(OverrideVisibilityOperation(), self.hero)

    def test_missing_subject_is_noop(self):
        self.handler.apply(OverrideVisibilityOperation(state="concealed"), None)
        assert self.services.recalc.token_batches == []

    def test_standalone_apply_requests_one_recalculation(self):
        self.handler.apply(OverrideVisibilityOperation(state="concealed"), self.hero)
        assert self.services.recalc.token_batches == [["ghoul", "goblin", "hero"]]

    def test_context_defers_recalculation(self):
        ctx = ApplyContext("item-blur")
        self.handler.apply(OverrideVisibilityOperation(state="concealed"), self.hero, ctx)
        assert self.services.recalc.token_batches == []
        assert ctx.affected == {"hero", "goblin", "ghoul"}
        assert ("hero", f"{OVERRIDE_FLAG}.item-blur/overrideVisibility/0") in ctx.owned_flags

    def test_replacement_stores_rule_only(self):
        op = OverrideVisibilityOperation(from_states=["undetected"], to_state="hidden", direction="from", range=5)
        self.handler.apply(op, self.hero)

        records = self.services.flags.get_flag("hero", REPLACEMENT_FLAG)
        record = records["overrideVisibility-hero"]
        assert record["toState"] == "hidden"
        assert record["source"] == "overrideVisibility-hero"
        assert record["priority"] == 100
        assert self.ledger.get_all_sources("hero") == []
        assert self.maps.visibility_map("hero") == {}

        self.handler.remove(op, self.hero)
        assert self.services.flags.get_all("hero") == {}


class TestConditionalState:
    def setup_method(self):
        self.hero = _make_token("hero", conditions=["invisible"], disposition=1, pc=True)
        self.goblin = _make_token("goblin", x=10)
        self.services = _make_services(self.hero, self.goblin)
        self.handler = ConditionalStateHandler(self.services)
        self.op = ConditionalStateOperation(condition="invisible", then_state="concealed", else_state="observed")

    def test_condition_met(self):
        self.handler.apply(self.op, self.hero)

        assert self.services.maps.get_visibility_between("goblin", "hero") == "concealed"
        sources = self.services.ledger.get_sources("hero", "visibility", "goblin")
        assert sources[0].type == "conditionalState"
        record = self.services.flags.get_flag("hero", f"{CONDITIONAL_FLAG}.conditionalState-hero")
        assert record["thenState"] == "concealed"

    def test_condition_not_met(self):
        visible = _make_token("hero", disposition=1, pc=True)
        self.services.scene.upsert_token(visible)
        self.handler.apply(self.op, visible)
        assert self.services.maps.get_visibility_between("goblin", "hero") == "observed"
        record = self.services.flags.get_flag("hero", f"{OVERRIDE_FLAG}.conditionalState-hero")
        assert record["conditionMet"] is False

    def test_no_branch_state_writes_no_pairs(self):
        op = ConditionalStateOperation(condition="prone", then_state="hidden")
        self.handler.apply(op, self.hero)
        assert self.services.ledger.get_all_sources("hero") == []
        assert self.services.flags.get_flag("hero", f"{CONDITIONAL_FLAG}.conditionalState-hero") is not None

    def test_remove(self):
        self.handler.apply(self.op, self.hero)
        self.handler.remove(self.op, self.hero)
        assert self.services.flags.get_all("hero") == {}
        assert self.services.maps.get_visibility_between("goblin", "hero") == "observed"

    def test_cover_state_type(self):
        op = ConditionalStateOperation(
            condition="invisible", then_state="standard", else_state="none", state_type="cover",
        )
        self.handler.apply(op, self.hero)
        assert self.services.maps.get_cover_between("goblin", "hero") == "standard"
        assert self.services.maps.get_visibility_between("goblin", "hero") == "observed"
        assert self.services.ledger.get_bucket_state("hero", "cover", "goblin") == "standard"


class TestOverrideCover:
    def setup_method(self):
        self.hero = _make_token("hero", disposition=1, pc=True)
        self.goblin = _make_token("goblin", x=10)
        self.services = _make_services(self.hero, self.goblin)
        self.handler = OverrideCoverHandler(self.services)

    def test_to_direction(self):
        op = OverrideCoverOperation(state="standard")
        self.handler.apply(op, self.hero)

        assert self.services.maps.get_cover_between("goblin", "hero") == "standard"
        assert self.services.ledger.get_bucket_state("hero", "cover", "goblin") == "standard"

        self.handler.remove(op, self.hero)
        assert self.services.maps.get_cover_between("goblin", "hero") == "none"
        assert self.services.flags.get_all("hero") == {}

    def test_prevent_auto_cover_is_recorded(self):
        op = OverrideCoverOperation(state="none", prevent_auto_cover=True)
        self.handler.apply(op, self.hero)

        source = self.services.ledger.get_sources("hero", "cover", "goblin")[0]
        assert source.prevent_auto_cover is True
        record = self.services.flags.get_flag("hero", f"{OVERRIDE_FLAG}.overrideCover-hero")
        assert record["preventAutoCover"] is True


class TestQueryTimeHandlers:
    def setup_method(self):
        self.hero = _make_token("hero", disposition=1, pc=True)
        self.goblin = _make_token("goblin", x=10)
        self.services = _make_services(self.hero, self.goblin)

    def test_provide_cover_record(self):
        handler = ProvideCoverHandler(self.services)
        op = ProvideCoverOperation(state="standard", blocked_edges=["north"], predicate=["item:ranged"])
        handler.apply(op, self.hero)

        record = self.services.flags.get_flag("hero", f"{PROVIDES_COVER_FLAG}.provideCover-hero")
        assert record["blockedEdges"] == ["north"]
        assert record["predicate"] == ["item:ranged"]
        assert self.services.recalc.token_batches == [["goblin", "hero"]]

        handler.remove(op, self.hero)
        assert self.services.flags.get_all("hero") == {}

    def test_provide_cover_requires_state(self):
        with pytest.raises(OperationConfigError):
            ProvideCoverHandler(self.services).apply(ProvideCoverOperation(), self.hero)

    def test_distance_record(self):
        handler = DistanceBasedVisibilityHandler(self.services)
        op = DistanceBasedVisibilityOperation(distance_bands=[DistanceBand(min_distance=30, state="concealed")])
        handler.apply(op, self.hero)
        record = self.services.flags.get_flag("hero", f"{DISTANCE_FLAG}.distanceBasedVisibility-hero")
        assert record["distanceBands"] == [{"minDistance": 30.0, "state": "concealed"}]

        handler.remove(op, self.hero)
        assert self.services.flags.get_all("hero") == {}

    def test_distance_requires_bands(self):
        with pytest.raises(OperationConfigError):
            DistanceBasedVisibilityHandler(self.services).apply(DistanceBasedVisibilityOperation(), self.hero)

    def test_aura_record(self):
        handler = AuraVisibilityHandler(self.services)
        op = AuraVisibilityOperation(aura_radius=20)
        handler.apply(op, self.hero)
        record = self.services.flags.get_flag("hero", f"{AURA_FLAG}.auraVisibility-hero")
        assert record["auraRadius"] == 20

        handler.remove(op, self.hero)
        assert self.services.flags.get_all("hero") == {}


class TestSelectBand:
    def setup_method(self):
        self.bands = [
            DistanceBand(min_distance=0, max_distance=30, state="observed"),
            DistanceBand(min_distance=30, state="concealed"),
        ]

    def test_lower_bound_inclusive(self):
        assert select_band(self.bands, 30).state == "concealed"

    def test_upper_bound_exclusive(self):
        assert select_band(self.bands, 29.999).state == "observed"

    def test_missing_bounds(self):
        assert select_band([DistanceBand(state="hidden")], 1000).state == "hidden"

    def test_gap_selects_nothing(self):
        assert select_band([DistanceBand(min_distance=10, max_distance=20, state="hidden")], 5) is None


class _NoopHandler(OperationHandler):
    def __init__(self, services):
        super().__init__(services)
        self.applied = []

    def _apply(self, operation, subject, ctx):
        self.applied.append(operation.type)

    def _remove(self, operation, subject, ctx):
        pass


class TestDispatcher:
    def test_routes_by_type(self):
        hero = _make_token("hero", disposition=1, pc=True)
        services = _make_services(hero, _make_token("goblin", x=5))
        dispatcher = OperationDispatcher(services)
        dispatcher.apply(OverrideVisibilityOperation(state="hidden"), hero)
        assert services.maps.get_visibility_between("goblin", "hero") == "hidden"

    def test_custom_handler_replaces_default(self):
        hero = _make_token("hero")
        services = _make_services(hero)
        dispatcher = OperationDispatcher(services)
        handler = _NoopHandler(services)
        dispatcher.register_handler("overrideVisibility", handler)

        dispatcher.apply(OverrideVisibilityOperation(state="hidden"), hero)
        assert handler.applied == ["overrideVisibility"]
        assert dispatcher.handler_for(OverrideVisibilityOperation()) is handler
