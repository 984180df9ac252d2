"""
Cover handlers.

overrideCover writes pairwise cover sources the same way visibility
overrides do (attacker/defender instead of observer/target). provideCover is
attached to the token granting the cover and only stores its rule; the cover
service evaluates it per attack.
"""

import logging

from visioner_kernel.models.operation import (
    OperationKind,
    OverrideCoverOperation,
    ProvideCoverOperation,
)
from visioner_kernel.models.scene import TokenState
from visioner_kernel.models.states import CoverState, StateType
from visioner_kernel.operations.base import (
    ApplyContext,
    OperationConfigError,
    OperationHandler,
    operation_record,
)
from visioner_kernel.operations.override import PairOverrideHandler

logger = logging.getLogger(__name__)

PROVIDES_COVER_FLAG = "providesCover"
ATTACK_OPTION_PREFIX = "item:"


class OverrideCoverHandler(PairOverrideHandler):
    kind = OperationKind.OVERRIDE_COVER
    state_type = StateType.COVER.value
    default_state = CoverState.NONE.value

    def _get_map(self, from_id: str, to_id: str) -> str:
        return self.services.maps.get_cover_between(from_id, to_id)

    def _set_map(self, from_id: str, to_id: str, state: str) -> None:
        self.services.maps.set_cover_between(from_id, to_id, state)

    def _apply(self, operation: OverrideCoverOperation, subject: TokenState, ctx: ApplyContext) -> None:
        self.apply_pairs(
            operation,
            subject,
            ctx,
            state=operation.state,
            direction=operation.direction,
            selector=operation.targets,
            token_ids=operation.token_ids,
            max_range=operation.range,
            qualifications=operation.qualifications,
            prevent_auto_cover=operation.prevent_auto_cover,
            preventAutoCover=operation.prevent_auto_cover,
            predicate=operation.predicate,
        )

    def _remove(self, operation: OverrideCoverOperation, subject: TokenState, ctx: ApplyContext) -> None:
        self.remove_pairs(operation, subject, ctx)

    def pair_passes(self, operation: OverrideCoverOperation, subject: TokenState, counterpart: TokenState) -> bool:
        # Attack terms ("item:ranged") are judged per attack by the cover service
        static = [t for t in operation.predicate or [] if not (isinstance(t, str) and t.startswith(ATTACK_OPTION_PREFIX))]
        predicates = self.services.predicates
        return predicates.evaluate(static, predicates.pair_options(subject, counterpart))


class ProvideCoverHandler(OperationHandler):
    kind = OperationKind.PROVIDE_COVER

    def _apply(self, operation: ProvideCoverOperation, subject: TokenState, ctx: ApplyContext) -> None:
        if operation.state is None:
            raise OperationConfigError("provideCover requires a state")

        # The predicate is evaluated per attack by the cover service
        source_id = self.source_id(operation, subject, ctx)
        record = operation_record(operation, source_id, self.priority(operation), ctx)
        self.write_keyed_flag(subject, PROVIDES_COVER_FLAG, source_id, record, ctx)
        ctx.touch(subject.id)
        ctx.touch(*(t.id for t in self.services.scene.other_tokens(subject.id)))

    def _remove(self, operation: ProvideCoverOperation, subject: TokenState, ctx: ApplyContext) -> None:
        self.unset_keyed_flag(subject, PROVIDES_COVER_FLAG, self.source_id(operation, subject, ctx))
        ctx.touch(subject.id)
        ctx.touch(*(t.id for t in self.services.scene.other_tokens(subject.id)))
