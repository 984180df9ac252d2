"""
Aura visibility — a radius around the subject that changes how tokens on
opposite sides of its edge perceive each other. Resolved at query time.
"""

from visioner_kernel.models.operation import AuraVisibilityOperation, OperationKind
from visioner_kernel.models.scene import TokenState
from visioner_kernel.operations.base import (
    ApplyContext,
    OperationHandler,
    operation_record,
)

AURA_FLAG = "auraVisibility"


class AuraVisibilityHandler(OperationHandler):
    kind = OperationKind.AURA_VISIBILITY

    def _apply(self, operation: AuraVisibilityOperation, subject: TokenState, ctx: ApplyContext) -> None:
        source_id = self.source_id(operation, subject, ctx)
        record = operation_record(operation, source_id, self.priority(operation), ctx)
        self.write_keyed_flag(subject, AURA_FLAG, source_id, record, ctx)
        ctx.touch(subject.id)
        ctx.touch(*(t.id for t in self.services.scene.other_tokens(subject.id)))

    def _remove(self, operation: AuraVisibilityOperation, subject: TokenState, ctx: ApplyContext) -> None:
        self.unset_keyed_flag(subject, AURA_FLAG, self.source_id(operation, subject, ctx))
        ctx.touch(subject.id)
        ctx.touch(*(t.id for t in self.services.scene.other_tokens(subject.id)))
