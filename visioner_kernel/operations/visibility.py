"""Visibility handlers — direct overrides, replacement rules and conditional state."""

import logging

from visioner_kernel.models.operation import (
    ConditionalStateOperation,
    OperationKind,
    OverrideVisibilityOperation,
)
from visioner_kernel.models.scene import TokenState
from visioner_kernel.models.states import StateType, VisibilityState
from visioner_kernel.operations.base import (
    ApplyContext,
    OperationHandler,
    OperationServices,
    operation_record,
)
from visioner_kernel.operations.cover import OverrideCoverHandler
from visioner_kernel.operations.override import PairOverrideHandler

logger = logging.getLogger(__name__)

REPLACEMENT_FLAG = "visibilityReplacement"
CONDITIONAL_FLAG = "conditionalState"


class OverrideVisibilityHandler(PairOverrideHandler):
    """
    Direct mode writes ledger sources and live map entries per pair.
    Replacement mode (fromStates -> toState) only stores a rule on the
    subject for the checker to evaluate against live geometry.
    """

    kind = OperationKind.OVERRIDE_VISIBILITY
    state_type = StateType.VISIBILITY.value
    default_state = VisibilityState.OBSERVED.value

    def _get_map(self, from_id: str, to_id: str) -> str:
        return self.services.maps.get_visibility_between(from_id, to_id)

    def _set_map(self, from_id: str, to_id: str, state: str) -> None:
        self.services.maps.set_visibility_between(from_id, to_id, state)

    def _apply(self, operation: OverrideVisibilityOperation, subject: TokenState, ctx: ApplyContext) -> None:
        if operation.is_replacement:
            source_id = self.source_id(operation, subject, ctx)
            record = operation_record(operation, source_id, self.priority(operation), ctx)
            self.write_keyed_flag(subject, REPLACEMENT_FLAG, source_id, record, ctx)
            ctx.touch(subject.id)
            return

        self.apply_pairs(
            operation,
            subject,
            ctx,
            state=operation.state,
            direction=operation.direction,
            selector=operation.observers,
            token_ids=operation.token_ids,
            max_range=operation.range,
            qualifications=operation.qualifications,
            applyOffGuard=operation.apply_off_guard,
        )

    def _remove(self, operation: OverrideVisibilityOperation, subject: TokenState, ctx: ApplyContext) -> None:
        if operation.is_replacement:
            self.unset_keyed_flag(subject, REPLACEMENT_FLAG, self.source_id(operation, subject, ctx))
            ctx.touch(subject.id)
            return
        self.remove_pairs(operation, subject, ctx)


class ConditionalStateHandler(OperationHandler):
    """
    Tests a condition on the subject's actor and writes thenState or
    elseState through the matching pairwise override under this operation's
    source id. The rule is also kept as a flag so the checker can
    re-evaluate it live.
    """

    kind = OperationKind.CONDITIONAL_STATE

    def __init__(self, services: OperationServices):
        super().__init__(services)
        self._visibility = OverrideVisibilityHandler(services)
        self._cover = OverrideCoverHandler(services)

    def condition_met(self, operation: ConditionalStateOperation, subject: TokenState) -> bool:
        if not operation.condition or subject.actor is None:
            return False
        return operation.condition in subject.actor.conditions

    def _target(self, operation: ConditionalStateOperation) -> PairOverrideHandler:
        if operation.state_type == StateType.COVER:
            return self._cover
        return self._visibility

    def _apply(self, operation: ConditionalStateOperation, subject: TokenState, ctx: ApplyContext) -> None:
        source_id = self.source_id(operation, subject, ctx)
        met = self.condition_met(operation, subject)
        record = operation_record(operation, source_id, self.priority(operation), ctx)
        self.write_keyed_flag(subject, CONDITIONAL_FLAG, source_id, record, ctx)

        state = operation.then_state if met else operation.else_state
        target = self._target(operation)
        if state is None:
            target.remove_pairs(operation, subject, ctx)
        else:
            target.apply_pairs(
                operation,
                subject,
                ctx,
                state=state,
                direction=operation.direction,
                selector=operation.observers,
                token_ids=operation.token_ids,
                max_range=operation.range,
                conditionMet=met,
            )
        logger.debug(
            "Conditional %s on %s: condition %r met=%s -> %s",
            source_id, subject.id, operation.condition, met, state,
        )
        ctx.touch(subject.id)

    def _remove(self, operation: ConditionalStateOperation, subject: TokenState, ctx: ApplyContext) -> None:
        self._target(operation).remove_pairs(operation, subject, ctx)
        self.unset_keyed_flag(subject, CONDITIONAL_FLAG, self.source_id(operation, subject, ctx))
        ctx.touch(subject.id)
