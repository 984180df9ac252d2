"""
Distance-based visibility — bands stored on the subject, resolved lazily
against live distance by the checker.
"""

import logging
from typing import List, Optional

from visioner_kernel.models.operation import (
    DistanceBand,
    DistanceBasedVisibilityOperation,
    OperationKind,
)
from visioner_kernel.models.scene import TokenState
from visioner_kernel.operations.base import (
    ApplyContext,
    OperationConfigError,
    OperationHandler,
    operation_record,
)

logger = logging.getLogger(__name__)

DISTANCE_FLAG = "distanceBasedVisibility"


def select_band(bands: List[DistanceBand], distance: float) -> Optional[DistanceBand]:
    """First band with min <= distance < max. Missing bounds are 0 and infinity."""
    for band in bands:
        lower = band.min_distance if band.min_distance is not None else 0
        upper = band.max_distance if band.max_distance is not None else float("inf")
        if lower <= distance < upper:
            return band
    return None


class DistanceBasedVisibilityHandler(OperationHandler):
    kind = OperationKind.DISTANCE_BASED_VISIBILITY

    def _apply(self, operation: DistanceBasedVisibilityOperation, subject: TokenState, ctx: ApplyContext) -> None:
        if not operation.distance_bands:
            raise OperationConfigError("distanceBasedVisibility requires distanceBands")
        source_id = self.source_id(operation, subject, ctx)
        # Replaced wholesale on every apply
        record = operation_record(operation, source_id, self.priority(operation), ctx)
        self.write_keyed_flag(subject, DISTANCE_FLAG, source_id, record, ctx)
        ctx.touch(subject.id)

    def _remove(self, operation: DistanceBasedVisibilityOperation, subject: TokenState, ctx: ApplyContext) -> None:
        if self.unset_keyed_flag(subject, DISTANCE_FLAG, self.source_id(operation, subject, ctx)):
            ctx.touch(subject.id)
