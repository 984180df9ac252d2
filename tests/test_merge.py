"""Tests for smart merge and operation compatibility warnings."""

from visioner_kernel.models.operation import (
    ConditionalStateOperation,
    DistanceBand,
    DistanceBasedVisibilityOperation,
    ModifyActionQualificationOperation,
    ModifyLightingOperation,
    ModifySensesOperation,
    OverrideCoverOperation,
    OverrideVisibilityOperation,
    SenseModification,
)
from visioner_kernel.rule_element.merge import compatibility_warnings, smart_merge


def _distance():
    return DistanceBasedVisibilityOperation(distance_bands=[DistanceBand(min_distance=30, state="concealed")])


def _conditional():
    return ConditionalStateOperation(condition="invisible", then_state="hidden")


class TestSmartMerge:
    def test_sense_maps_combine(self):
        merged = smart_merge([
            ModifySensesOperation(sense_modifications={"hearing": SenseModification(range=20)}),
            ModifySensesOperation(sense_modifications={"all": SenseModification(max_range=20)}),
        ])
        assert len(merged) == 1
        assert set(merged[0].sense_modifications) == {"hearing", "all"}

    def test_qualifications_merge_per_field(self):
        merged = smart_merge([
            ModifyActionQualificationOperation(qualifications={"hide": {"canUseThisConcealment": False}}),
            ModifyActionQualificationOperation(qualifications={
                "hide": {"customMessage": "No"},
                "sneak": {"endPositionQualifies": False},
            }),
        ])
        assert len(merged) == 1
        hide = merged[0].qualifications["hide"]
        assert hide.can_use_this_concealment is False
        assert hide.custom_message == "No"
        assert merged[0].qualifications["sneak"].end_position_qualifies is False

    def test_visibility_overrides_keep_higher_priority(self):
        merged = smart_merge([
            OverrideVisibilityOperation(state="concealed", priority=10),
            OverrideVisibilityOperation(state="hidden", priority=50),
        ])
        assert [(op.state, op.priority) for op in merged] == [("hidden", 50)]

    def test_equal_priority_keeps_first(self):
        merged = smart_merge([
            ModifyLightingOperation(lighting_level="dim"),
            ModifyLightingOperation(lighting_level="darkness"),
        ])
        assert [op.lighting_level for op in merged] == ["dim"]

    def test_cover_overrides_merge(self):
        merged = smart_merge([
            OverrideCoverOperation(state="lesser", priority=5),
            OverrideCoverOperation(state="greater", priority=6),
        ])
        assert [op.state for op in merged] == ["greater"]

    def test_replacement_and_direct_stay_apart(self):
        ops = [
            OverrideVisibilityOperation(state="concealed"),
            OverrideVisibilityOperation(from_states=["undetected"], to_state="hidden"),
        ]
        assert len(smart_merge(ops)) == 2

    def test_distance_absorbs_following_conditional(self):
        merged = smart_merge([_distance(), _conditional()])
        assert len(merged) == 1
        assert merged[0].fallback.condition == "invisible"

    def test_distance_ignores_non_adjacent_conditional(self):
        merged = smart_merge([_distance(), ModifyLightingOperation(lighting_level="dim"), _conditional()])
        assert [op.type for op in merged] == ["distanceBasedVisibility", "modifyLighting", "conditionalState"]
        assert merged[0].fallback is None

    def test_unlisted_pairs_apply_independently(self):
        ops = [
            OverrideVisibilityOperation(state="concealed"),
            ModifySensesOperation(sense_modifications={"all": SenseModification(max_range=5)}),
            ConditionalStateOperation(condition="invisible", then_state="hidden"),
        ]
        assert smart_merge(ops) == ops

    def test_merge_preserves_order_of_survivors(self):
        merged = smart_merge([
            ModifySensesOperation(sense_modifications={"hearing": SenseModification(range=20)}),
            ModifyLightingOperation(lighting_level="dim"),
            ModifySensesOperation(sense_modifications={"scent": SenseModification(range=20)}),
        ])
        assert [op.type for op in merged] == ["modifySenses", "modifyLighting"]

    def test_custom_priority_function(self):
        merged = smart_merge(
            [ModifyLightingOperation(lighting_level="dim"), ModifyLightingOperation(lighting_level="bright", priority=150)],
            priority=lambda op: op.priority if op.priority is not None else 200,
        )
        assert [op.lighting_level for op in merged] == ["dim"]

    def test_inputs_are_not_mutated(self):
        first = ModifySensesOperation(sense_modifications={"hearing": SenseModification(range=20)})
        smart_merge([first, ModifySensesOperation(sense_modifications={"scent": SenseModification(range=5)})])
        assert set(first.sense_modifications) == {"hearing"}


class TestCompatibilityWarnings:
    def test_multiple_visibility_operations(self):
        warnings = compatibility_warnings([
            OverrideVisibilityOperation(state="concealed"),
            _distance(),
        ])
        assert warnings == ["Multiple visibility operations detected: overrideVisibility, distanceBasedVisibility"]

    def test_groups_reported_separately(self):
        warnings = compatibility_warnings([
            ModifySensesOperation(),
            ModifySensesOperation(),
            OverrideCoverOperation(state="lesser"),
        ])
        assert len(warnings) == 1
        assert warnings[0].startswith("Multiple sense operations")

    def test_no_warnings_for_singletons(self):
        assert compatibility_warnings([OverrideVisibilityOperation(state="concealed"), ModifyLightingOperation()]) == []
