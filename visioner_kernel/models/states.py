"""Perception vocabulary — visibility, cover, lighting and the enums the wire format uses."""

from enum import Enum


class VisibilityState(str, Enum):
    OBSERVED = "observed"
    CONCEALED = "concealed"
    HIDDEN = "hidden"
    UNDETECTED = "undetected"


class CoverState(str, Enum):
    NONE = "none"
    LESSER = "lesser"
    STANDARD = "standard"
    GREATER = "greater"


class StateType(str, Enum):
    VISIBILITY = "visibility"
    COVER = "cover"


class Direction(str, Enum):
    """Which way perception flows relative to the subject token."""
    TO = "to"        # Others perceive (or attack) the subject
    FROM = "from"    # The subject perceives (or attacks) others


class TokenSelector(str, Enum):
    ALL = "all"
    ALLIES = "allies"
    ENEMIES = "enemies"
    SELECTED = "selected"
    TARGETED = "targeted"
    SPECIFIC = "specific"


class LightingLevel(str, Enum):
    DARKNESS = "darkness"
    DIM = "dim"
    BRIGHT = "bright"
    MAGICAL_DARKNESS = "magicalDarkness"
    GREATER_MAGICAL_DARKNESS = "greaterMagicalDarkness"


class SenseAcuity(str, Enum):
    PRECISE = "precise"
    IMPRECISE = "imprecise"
    VAGUE = "vague"


class LevelComparison(str, Enum):
    LTE = "lte"
    GTE = "gte"
    LT = "lt"
    GT = "gt"
    EQ = "eq"


class CoverEdge(str, Enum):
    NORTH = "north"
    SOUTH = "south"
    EAST = "east"
    WEST = "west"


class AutoCoverBehavior(str, Enum):
    ADD = "add"
    REPLACE = "replace"
    MINIMUM = "minimum"


class EncounterEvent(str, Enum):
    TURN_START = "turn-start"
    TURN_END = "turn-end"


def enum_value(value):
    """Plain value of an enum member; other values pass through."""
    return value.value if isinstance(value, Enum) else value
