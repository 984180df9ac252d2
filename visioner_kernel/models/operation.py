"""
Operations — the declarative units of effect inside a rule element.

Every operation is a tagged variant selected by its `type` field. The set of
kinds is closed (OperationKind); each variant carries only the parameters its
handler reads. Operations are never mutated at apply time.
"""

import logging
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError

from visioner_kernel.models.base import Predicate, WireModel
from visioner_kernel.models.source import ActionQualification
from visioner_kernel.models.states import (
    AutoCoverBehavior,
    CoverEdge,
    CoverState,
    Direction,
    LevelComparison,
    LightingLevel,
    SenseAcuity,
    StateType,
    TokenSelector,
    VisibilityState,
)

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    OVERRIDE_VISIBILITY = "overrideVisibility"
    OVERRIDE_COVER = "overrideCover"
    PROVIDE_COVER = "provideCover"
    MODIFY_SENSES = "modifySenses"
    MODIFY_DETECTION_MODES = "modifyDetectionModes"
    MODIFY_LIGHTING = "modifyLighting"
    CONDITIONAL_STATE = "conditionalState"
    DISTANCE_BASED_VISIBILITY = "distanceBasedVisibility"
    AURA_VISIBILITY = "auraVisibility"
    OFF_GUARD_SUPPRESSION = "offGuardSuppression"
    MODIFY_ACTION_QUALIFICATION = "modifyActionQualification"


class OperationBase(WireModel):
    predicate: Optional[Predicate] = None
    priority: Optional[int] = None             # None -> the kind's configured default
    source: Optional[str] = None               # Source id; derived from the rule element if absent

    @property
    def kind(self) -> OperationKind:
        return OperationKind(self.type)


class SenseModification(WireModel):
    """Range/acuity deltas for one sense or detection mode (or "all")."""
    range: Optional[float] = None              # Exact range to set
    precision: Optional[SenseAcuity] = None    # Exact acuity to set
    max_range: Optional[float] = None          # Clamp to at most this range
    beyond_is_imprecise: bool = False          # Past max_range, degrade to imprecise instead of clamping


class DistanceBand(WireModel):
    """[min_distance, max_distance) -> state. Missing bounds mean 0 and infinity."""
    min_distance: Optional[float] = None
    max_distance: Optional[float] = None
    state: VisibilityState


class OverrideVisibilityOperation(OperationBase):
    type: Literal["overrideVisibility"] = "overrideVisibility"
    state: Optional[VisibilityState] = None
    direction: Direction = Direction.TO
    observers: TokenSelector = TokenSelector.ALL
    token_ids: List[str] = []
    range: Optional[float] = None
    qualifications: Dict[str, ActionQualification] = {}
    apply_off_guard: bool = True
    # Replacement sub-mode: rewrite fromStates -> toState at query time
    from_states: List[VisibilityState] = []
    to_state: Optional[VisibilityState] = None
    level_comparison: Optional[LevelComparison] = None

    @property
    def is_replacement(self) -> bool:
        return bool(self.from_states) and self.to_state is not None


class OverrideCoverOperation(OperationBase):
    type: Literal["overrideCover"] = "overrideCover"
    state: Optional[CoverState] = None
    direction: Direction = Direction.TO
    targets: TokenSelector = TokenSelector.ALL
    token_ids: List[str] = []
    range: Optional[float] = None
    prevent_auto_cover: bool = False
    qualifications: Dict[str, ActionQualification] = {}


class ProvideCoverOperation(OperationBase):
    type: Literal["provideCover"] = "provideCover"
    state: Optional[CoverState] = None
    blocked_edges: List[CoverEdge] = []
    requires_take_cover: bool = False
    auto_cover_behavior: AutoCoverBehavior = AutoCoverBehavior.REPLACE
    range: Optional[float] = None
    qualifications: Dict[str, ActionQualification] = {}


class ModifySensesOperation(OperationBase):
    type: Literal["modifySenses"] = "modifySenses"
    sense_modifications: Dict[str, SenseModification] = {}


class ModifyDetectionModesOperation(OperationBase):
    type: Literal["modifyDetectionModes"] = "modifyDetectionModes"
    mode_modifications: Dict[str, SenseModification] = {}


class ModifyLightingOperation(OperationBase):
    type: Literal["modifyLighting"] = "modifyLighting"
    lighting_level: Optional[LightingLevel] = None


class ConditionalStateOperation(OperationBase):
    type: Literal["conditionalState"] = "conditionalState"
    condition: Optional[str] = None            # Condition slug tested on the subject's actor
    then_state: Optional[Union[VisibilityState, CoverState]] = None
    else_state: Optional[Union[VisibilityState, CoverState]] = None
    state_type: StateType = StateType.VISIBILITY
    direction: Direction = Direction.TO
    observers: TokenSelector = TokenSelector.ALL
    token_ids: List[str] = []
    range: Optional[float] = None


class DistanceBasedVisibilityOperation(OperationBase):
    type: Literal["distanceBasedVisibility"] = "distanceBasedVisibility"
    distance_bands: List[DistanceBand] = []
    direction: Direction = Direction.TO
    observers: TokenSelector = TokenSelector.ALL
    token_ids: List[str] = []
    # Set by smart merge when a conditionalState directly follows this operation
    fallback: Optional[ConditionalStateOperation] = Field(default=None, alias="conditionalState")


class AuraVisibilityOperation(OperationBase):
    type: Literal["auraVisibility"] = "auraVisibility"
    aura_radius: float = Field(default=10, ge=0)
    inside_outside_state: VisibilityState = VisibilityState.CONCEALED
    outside_inside_state: VisibilityState = VisibilityState.CONCEALED
    source_exempt: bool = True
    aura_targets: TokenSelector = TokenSelector.ALL


class OffGuardSuppressionOperation(OperationBase):
    type: Literal["offGuardSuppression"] = "offGuardSuppression"
    suppressed_states: List[VisibilityState] = []


class ModifyActionQualificationOperation(OperationBase):
    type: Literal["modifyActionQualification"] = "modifyActionQualification"
    qualifications: Dict[str, ActionQualification] = {}
    range: Optional[float] = None


Operation = Annotated[
    Union[
        OverrideVisibilityOperation,
        OverrideCoverOperation,
        ProvideCoverOperation,
        ModifySensesOperation,
        ModifyDetectionModesOperation,
        ModifyLightingOperation,
        ConditionalStateOperation,
        DistanceBasedVisibilityOperation,
        AuraVisibilityOperation,
        OffGuardSuppressionOperation,
        ModifyActionQualificationOperation,
    ],
    Field(discriminator="type"),
]

_operation_adapter: TypeAdapter = TypeAdapter(Operation)


def parse_operation(raw: Any) -> Optional[OperationBase]:
    """
    Parse one authored operation. Malformed input is logged and dropped
    (returns None) so that sibling operations still load.
    """
    if isinstance(raw, OperationBase):
        return raw
    try:
        return _operation_adapter.validate_python(raw)
    except ValidationError as e:
        op_type = raw.get("type") if isinstance(raw, dict) else type(raw).__name__
        logger.warning(
            "Skipping invalid operation %r: %s", op_type, e.errors(include_url=False)
        )
        return None


def parse_operations(raws: List[Any]) -> List[OperationBase]:
    """Parse a list of authored operations, keeping only the valid ones in order."""
    parsed = []
    for raw in raws:
        op = parse_operation(raw)
        if op is not None:
            parsed.append(op)
    return parsed
