"""Shared base for models that travel over the authored (camelCase) wire format."""

from typing import Any, Dict, List, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

# A predicate term is an option string ("self:trait:undead", "not:a") or a
# logical object ({"or": [...]}, {"and": [...]}, {"not": ...}).
PredicateTerm = Union[str, Dict[str, Any]]
Predicate = List[PredicateTerm]


class WireModel(BaseModel):
    """Accepts camelCase or snake_case input; dumps camelCase for flags and JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
