"""Rule Element — the authored bundle of operations attached to an effect item."""

from typing import Any, List, Optional

from pydantic import field_validator

from visioner_kernel.models.base import Predicate, WireModel
from visioner_kernel.models.operation import Operation, parse_operations

RULE_ELEMENT_KEY = "PF2eVisionerEffect"


class RuleElementSpec(WireModel):
    """
    The declarative schema of one rule element, e.g.

        {"key": "PF2eVisionerEffect",
         "predicate": ["self:trait:undead"],
         "operations": [{"type": "overrideVisibility", "state": "concealed"}],
         "priority": 100}
    """

    key: str = RULE_ELEMENT_KEY
    slug: Optional[str] = None
    predicate: Optional[Predicate] = None
    operations: List[Operation] = []
    priority: int = 100

    @field_validator("operations", mode="before")
    @classmethod
    def _drop_invalid_operations(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return parse_operations(value)


class EffectItem(WireModel):
    """An effect (spell, feat, item) owning zero or more rule elements."""

    id: str
    name: str
    slug: Optional[str] = None
    rules: List[RuleElementSpec] = []

    def visioner_rules(self) -> List[RuleElementSpec]:
        """Only the rule elements this kernel handles."""
        return [r for r in self.rules if r.key == RULE_ELEMENT_KEY]
