"""Lighting overrides — priority-tagged lighting levels keyed by source id."""

import logging
from typing import Optional

from visioner_kernel.models.operation import ModifyLightingOperation, OperationKind
from visioner_kernel.models.scene import TokenState
from visioner_kernel.operations.base import (
    ApplyContext,
    OperationConfigError,
    OperationHandler,
    keyed_records,
    operation_record,
)
from visioner_kernel.scene.store import FlagStore

logger = logging.getLogger(__name__)

LIGHTING_FLAG = "lightingModification"


class ModifyLightingHandler(OperationHandler):
    kind = OperationKind.MODIFY_LIGHTING

    def _apply(self, operation: ModifyLightingOperation, subject: TokenState, ctx: ApplyContext) -> None:
        if operation.lighting_level is None:
            raise OperationConfigError("modifyLighting requires a lightingLevel")
        if not self.subject_passes(operation, subject):
            logger.debug("modifyLighting predicate failed on %s", subject.id)
            self._remove(operation, subject, ctx)
            return
        source_id = self.source_id(operation, subject, ctx)
        record = operation_record(operation, source_id, self.priority(operation), ctx)
        self.write_keyed_flag(subject, LIGHTING_FLAG, source_id, record, ctx)
        ctx.touch(subject.id)

    def _remove(self, operation: ModifyLightingOperation, subject: TokenState, ctx: ApplyContext) -> None:
        if self.unset_keyed_flag(subject, LIGHTING_FLAG, self.source_id(operation, subject, ctx)):
            ctx.touch(subject.id)


def get_effective_lighting(flags: FlagStore, token_id: str, default: Optional[str] = None) -> Optional[str]:
    """Highest-priority lighting override on the token, else the ambient default."""
    best = None
    for record in keyed_records(flags, token_id, LIGHTING_FLAG):
        if best is None or record.get("priority", 0) > best.get("priority", 0):
            best = record
    if best is None:
        return default
    return best.get("lightingLevel", default)


def has_lighting_modification(flags: FlagStore, token_id: str) -> bool:
    return bool(keyed_records(flags, token_id, LIGHTING_FLAG))
