"""Visioner Kernel data models."""

from visioner_kernel.models.base import Predicate, PredicateTerm, WireModel
from visioner_kernel.models.config import DEFAULT_PRIORITIES, KernelConfig
from visioner_kernel.models.operation import (
    AuraVisibilityOperation,
    ConditionalStateOperation,
    DistanceBand,
    DistanceBasedVisibilityOperation,
    ModifyActionQualificationOperation,
    ModifyDetectionModesOperation,
    ModifyLightingOperation,
    ModifySensesOperation,
    OffGuardSuppressionOperation,
    Operation,
    OperationBase,
    OperationKind,
    OverrideCoverOperation,
    OverrideVisibilityOperation,
    ProvideCoverOperation,
    SenseModification,
    parse_operation,
    parse_operations,
)
from visioner_kernel.models.results import (
    CheckerResult,
    CoverPermission,
    HidePrerequisites,
    ProvidedCover,
    SneakPrerequisites,
    SourceQualificationCheck,
)
from visioner_kernel.models.rule_element import RULE_ELEMENT_KEY, EffectItem, RuleElementSpec
from visioner_kernel.models.scene import ActorState, DetectionMode, Sense, TokenState
from visioner_kernel.models.source import ActionQualification, QualificationRecord, Source, StateBucket
from visioner_kernel.models.states import (
    AutoCoverBehavior,
    CoverEdge,
    CoverState,
    Direction,
    EncounterEvent,
    LevelComparison,
    LightingLevel,
    SenseAcuity,
    StateType,
    TokenSelector,
    VisibilityState,
)

__all__ = [
    "ActionQualification",
    "ActorState",
    "AuraVisibilityOperation",
    "AutoCoverBehavior",
    "CheckerResult",
    "ConditionalStateOperation",
    "CoverEdge",
    "CoverPermission",
    "CoverState",
    "DEFAULT_PRIORITIES",
    "DetectionMode",
    "Direction",
    "DistanceBand",
    "DistanceBasedVisibilityOperation",
    "EffectItem",
    "EncounterEvent",
    "HidePrerequisites",
    "KernelConfig",
    "LevelComparison",
    "LightingLevel",
    "ModifyActionQualificationOperation",
    "ModifyDetectionModesOperation",
    "ModifyLightingOperation",
    "ModifySensesOperation",
    "OffGuardSuppressionOperation",
    "Operation",
    "OperationBase",
    "OperationKind",
    "OverrideCoverOperation",
    "OverrideVisibilityOperation",
    "Predicate",
    "PredicateTerm",
    "ProvideCoverOperation",
    "ProvidedCover",
    "QualificationRecord",
    "RULE_ELEMENT_KEY",
    "RuleElementSpec",
    "SenseAcuity",
    "SenseModification",
    "Sense",
    "SneakPrerequisites",
    "Source",
    "SourceQualificationCheck",
    "StateBucket",
    "StateType",
    "TokenSelector",
    "TokenState",
    "VisibilityState",
    "WireModel",
    "parse_operation",
    "parse_operations",
]
