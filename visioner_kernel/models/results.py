"""Read-side results — checker decisions, qualification verdicts, cover lookups."""

from typing import Dict, List, Optional

from visioner_kernel.models.base import WireModel


class CheckerResult(WireModel):
    """The single winning rule element decision for an observer->target pair."""
    state: str
    source: Optional[str] = None
    priority: int = 100
    type: str                                   # Mechanism: "visibilityReplacement", "override", ...
    distance: Optional[float] = None
    condition_met: Optional[bool] = None


class HidePrerequisites(WireModel):
    can_hide: bool
    qualifying_concealment: int = 0
    qualifying_cover: int = 0
    messages: List[str] = []


class SneakPrerequisites(WireModel):
    qualifies: bool
    messages: List[str] = []


class SourceQualificationCheck(WireModel):
    qualifies: bool
    messages: List[str] = []
    total_sources: int = 0
    qualifying_sources: int = 0


class ProvidedCover(WireModel):
    state: str
    source: str
    priority: int = 100
    behavior: str = "replace"


class CoverPermission(WireModel):
    """Whether a blocker may grant auto cover to a target, and which rule said no."""
    allowed: bool
    rule_element: Optional[Dict[str, Optional[str]]] = None
