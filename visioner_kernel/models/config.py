"""Kernel configuration."""

from typing import Dict, Optional

from pydantic import BaseModel, Field

from visioner_kernel.models.operation import OperationKind
from visioner_kernel.models.states import LightingLevel

# One canonical default per operation kind. Equal defaults mean that, absent
# explicit priorities, the checker's mechanism order decides.
DEFAULT_PRIORITIES: Dict[str, int] = {kind.value: 100 for kind in OperationKind}


class KernelConfig(BaseModel):
    """Configuration for the rule element kernel."""

    flag_namespace: str = "pf2e-visioner"
    dedup_window_seconds: float = Field(default=1.0, ge=0)
    dedup_max_entries: int = Field(default=1024, ge=1)
    default_priorities: Dict[str, int] = dict(DEFAULT_PRIORITIES)
    default_lighting: Optional[LightingLevel] = None

    def default_priority(self, kind: OperationKind) -> int:
        return self.default_priorities.get(kind.value, 100)
