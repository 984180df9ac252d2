"""Scene entities — tokens and actors as read from the host."""

from typing import List, Optional

from visioner_kernel.models.base import WireModel
from visioner_kernel.models.states import SenseAcuity


class Sense(WireModel):
    """One actor sense. A range of None means unlimited."""
    type: str                                   # e.g., "darkvision", "hearing"
    acuity: SenseAcuity = SenseAcuity.PRECISE
    range: Optional[float] = None


class DetectionMode(WireModel):
    """One token detection mode. A range of None means unlimited."""
    id: str                                     # e.g., "basicSight", "hearing"
    enabled: bool = True
    range: Optional[float] = None


class ActorState(WireModel):
    """The capability holder behind a token."""

    id: str
    name: str = ""
    type: str = "npc"                           # "character" | "npc" | "hazard" ...
    traits: List[str] = []
    conditions: List[str] = []                  # Condition slugs, e.g. "invisible"
    roll_options: List[str] = []                # Extra host-provided roll options
    senses: List[Sense] = []
    has_player_owner: bool = False


class TokenState(WireModel):
    """A participant on the scene. Positions are in feet."""

    id: str
    name: str = ""
    x: float = 0.0
    y: float = 0.0
    elevation: float = 0.0
    disposition: int = 0                        # 1 friendly, 0 neutral, -1 hostile
    actor: Optional[ActorState] = None
    detection_modes: List[DetectionMode] = []
