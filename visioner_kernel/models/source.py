"""State Sources — why a token is in a given visibility or cover state."""

from typing import Dict, List, Optional

from pydantic import Field

from visioner_kernel.models.base import Predicate, WireModel
from visioner_kernel.models.states import Direction


class ActionQualification(WireModel):
    """
    Per-action capability flags attached to a source or a qualification record.

    Every flag is optional: an absent flag means "no opinion", which the
    Qualification Engine treats as permissive.
    """
    can_use_this_concealment: Optional[bool] = None
    can_use_this_cover: Optional[bool] = None
    start_position_qualifies: Optional[bool] = None
    end_position_qualifies: Optional[bool] = None
    ignore_this_concealment: Optional[bool] = None
    ignore_concealment: Optional[bool] = None
    ignore_this_cover: Optional[bool] = None
    custom_message: Optional[str] = None


class Source(WireModel):
    """A single rule's claim on a token's visibility or cover state."""

    id: str
    type: Optional[str] = None                  # Originating operation kind or category
    priority: int = 100                         # Higher wins; ties keep the earlier source
    state: Optional[str] = None                 # Claimed visibility or cover value
    direction: Optional[Direction] = None
    qualifications: Dict[str, ActionQualification] = {}
    predicate: Optional[Predicate] = None
    prevent_auto_cover: bool = False
    rule_element_id: Optional[str] = None       # Owning rule element, for bulk teardown


class StateBucket(WireModel):
    """One ledger bucket: the sources for (token, state type, observer?)."""

    sources: List[Source] = []
    state: Optional[str] = None


class QualificationRecord(WireModel):
    """A modifyActionQualification record stored on the subject token."""

    id: str
    type: Optional[str] = None
    priority: int = 100
    qualifications: Dict[str, ActionQualification] = {}
    range: Optional[float] = Field(default=None, ge=0)    # Only counterparts within range are affected
    rule_element_id: Optional[str] = None
