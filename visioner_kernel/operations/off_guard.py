"""Off-guard suppression — visibility states for which off-guard is not granted."""

from typing import List

from visioner_kernel.models.operation import OffGuardSuppressionOperation, OperationKind
from visioner_kernel.models.scene import TokenState
from visioner_kernel.models.states import enum_value
from visioner_kernel.operations.base import (
    ApplyContext,
    OperationConfigError,
    OperationHandler,
    keyed_records,
    operation_record,
)
from visioner_kernel.scene.store import FlagStore

OFF_GUARD_FLAG = "offGuardSuppression"


class OffGuardSuppressionHandler(OperationHandler):
    kind = OperationKind.OFF_GUARD_SUPPRESSION

    def _apply(self, operation: OffGuardSuppressionOperation, subject: TokenState, ctx: ApplyContext) -> None:
        if not operation.suppressed_states:
            raise OperationConfigError("offGuardSuppression requires suppressedStates")
        if not self.subject_passes(operation, subject):
            self._remove(operation, subject, ctx)
            return
        source_id = self.source_id(operation, subject, ctx)
        record = operation_record(operation, source_id, self.priority(operation), ctx)
        self.write_keyed_flag(subject, OFF_GUARD_FLAG, source_id, record, ctx)
        ctx.touch(subject.id)

    def _remove(self, operation: OffGuardSuppressionOperation, subject: TokenState, ctx: ApplyContext) -> None:
        if self.unset_keyed_flag(subject, OFF_GUARD_FLAG, self.source_id(operation, subject, ctx)):
            ctx.touch(subject.id)


def get_suppressed_states(flags: FlagStore, token_id: str) -> List[str]:
    states: List[str] = []
    for record in keyed_records(flags, token_id, OFF_GUARD_FLAG):
        for state in record.get("suppressedStates", []):
            if state not in states:
                states.append(state)
    return states


def should_suppress_off_guard(flags: FlagStore, token_id: str, state: str) -> bool:
    return enum_value(state) in get_suppressed_states(flags, token_id)
