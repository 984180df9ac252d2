"""Action qualification records — per-action capability flags on the subject."""

import logging

from visioner_kernel.models.operation import ModifyActionQualificationOperation, OperationKind
from visioner_kernel.models.scene import TokenState
from visioner_kernel.models.source import QualificationRecord
from visioner_kernel.operations.base import (
    ApplyContext,
    OperationConfigError,
    OperationHandler,
)
from visioner_kernel.qualification.engine import QUALIFICATIONS_FLAG

logger = logging.getLogger(__name__)


class ModifyActionQualificationHandler(OperationHandler):
    kind = OperationKind.MODIFY_ACTION_QUALIFICATION

    def _apply(self, operation: ModifyActionQualificationOperation, subject: TokenState, ctx: ApplyContext) -> None:
        if not operation.qualifications:
            raise OperationConfigError("modifyActionQualification requires qualifications")
        if not self.subject_passes(operation, subject):
            logger.debug("modifyActionQualification predicate failed on %s", subject.id)
            self._remove(operation, subject, ctx)
            return

        source_id = self.source_id(operation, subject, ctx)
        record = QualificationRecord(
            id=source_id,
            type=operation.type,
            priority=self.priority(operation),
            qualifications=operation.qualifications,
            range=operation.range,
            rule_element_id=ctx.rule_element_id,
        )
        self.write_keyed_flag(subject, QUALIFICATIONS_FLAG, source_id, record.to_wire(), ctx)
        ctx.touch(subject.id)

    def _remove(self, operation: ModifyActionQualificationOperation, subject: TokenState, ctx: ApplyContext) -> None:
        if self.unset_keyed_flag(subject, QUALIFICATIONS_FLAG, self.source_id(operation, subject, ctx)):
            ctx.touch(subject.id)
