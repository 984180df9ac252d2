"""
Rule Element Checker — the read side of the rule element system.

Given an observer and a target, consults every active mechanism and returns
the single highest-priority visibility decision, or None so the caller falls
back to geometry-only perception.

Mechanism order (only a tie-break between equal priorities):
    visibilityReplacement, override, conditionalState,
    distanceBasedVisibility, auraVisibility

Rules stored with direction "to" live on the target (others perceiving it);
rules stored with direction "from" live on the observer (it perceiving others).
"""

import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from visioner_kernel.ledger.store import SourceLedger
from visioner_kernel.models.operation import (
    AuraVisibilityOperation,
    ConditionalStateOperation,
    DistanceBasedVisibilityOperation,
    OperationKind,
    OverrideVisibilityOperation,
)
from visioner_kernel.models.results import CheckerResult
from visioner_kernel.models.scene import TokenState
from visioner_kernel.models.states import Direction, StateType
from visioner_kernel.operations.aura import AURA_FLAG
from visioner_kernel.operations.base import OperationServices, all_keyed_records, keyed_records
from visioner_kernel.operations.distance import DISTANCE_FLAG, select_band
from visioner_kernel.operations.visibility import CONDITIONAL_FLAG, REPLACEMENT_FLAG

logger = logging.getLogger(__name__)

REPLACEMENT = "visibilityReplacement"
OVERRIDE = "override"
CONDITIONAL = OperationKind.CONDITIONAL_STATE.value
DISTANCE = OperationKind.DISTANCE_BASED_VISIBILITY.value
AURA = OperationKind.AURA_VISIBILITY.value

MECHANISM_ORDER = [REPLACEMENT, OVERRIDE, CONDITIONAL, DISTANCE, AURA]

class RuleElementChecker:
    """Resolves rule element visibility for observer -> target pairs."""

    def __init__(self, services: OperationServices):
        self.services = services

    # --- Public API ---

    def resolve(
        self,
        observer: TokenState,
        target: TokenState,
        current_state: Optional[str] = None,
    ) -> Optional[CheckerResult]:
        best: Optional[CheckerResult] = None
        for result in self._collect(observer, target, current_state):
            if best is None or result.priority > best.priority:
                best = result
        if best is not None:
            logger.debug(
                "Rule element %s decides %s -> %s: %s (priority %d)",
                best.type, observer.id, target.id, best.state, best.priority,
            )
        return best

    def get_all(
        self,
        observer: TokenState,
        target: TokenState,
        current_state: Optional[str] = None,
    ) -> List[CheckerResult]:
        """Every active result, highest priority first, mechanism order among ties."""
        results = list(self._collect(observer, target, current_state))
        return sorted(results, key=lambda r: -r.priority)

    def _collect(
        self,
        observer: TokenState,
        target: TokenState,
        current_state: Optional[str],
    ) -> Iterator[CheckerResult]:
        if observer.id == target.id:
            return
        if current_state is None:
            current_state = self.services.maps.get_visibility_between(observer.id, target.id)
        yield from self._replacements(observer, target, current_state)
        yield from self._overrides(observer, target)
        yield from self._conditionals(observer, target)
        yield from self._distance_bands(observer, target)
        yield from self._auras(observer, target)

    # --- Shared helpers ---

    def _directed_records(
        self,
        family: str,
        observer: TokenState,
        target: TokenState,
    ) -> Iterator[Tuple[Dict[str, Any], TokenState, TokenState]]:
        """(record, subject, counterpart) for records that govern this pair."""
        flags = self.services.flags
        for record in keyed_records(flags, target.id, family):
            if record.get("direction", Direction.TO.value) == Direction.TO:
                yield record, target, observer
        for record in keyed_records(flags, observer.id, family):
            if record.get("direction") == Direction.FROM:
                yield record, observer, target

    def _applies(self, operation: Any, subject: TokenState, counterpart: TokenState, max_range: Optional[float] = None) -> bool:
        scene = self.services.scene
        if not scene.selector_matches(subject, counterpart, operation.observers, operation.token_ids, max_range):
            return False
        predicates = self.services.predicates
        return predicates.evaluate(operation.predicate, predicates.pair_options(subject, counterpart))

    def _priority(self, operation: Any) -> int:
        if operation.priority is not None:
            return operation.priority
        return self.services.config.default_priority(operation.kind)

    def _live_token(self, token: TokenState) -> TokenState:
        return self.services.scene.get_token(token.id) or token

    # --- Mechanisms ---

    def _replacements(self, observer: TokenState, target: TokenState, current_state: str) -> Iterator[CheckerResult]:
        for record, subject, counterpart in self._directed_records(REPLACEMENT_FLAG, observer, target):
            operation = OverrideVisibilityOperation.model_validate(record)
            if current_state not in operation.from_states:
                continue
            if not self._applies(operation, subject, counterpart, operation.range):
                continue
            yield CheckerResult(
                state=operation.to_state,
                source=operation.source,
                priority=self._priority(operation),
                type=REPLACEMENT,
                distance=self.services.scene.distance(observer, target) if operation.range is not None else None,
            )

    def _overrides(self, observer: TokenState, target: TokenState) -> Iterator[CheckerResult]:
        sources = [
            s for s in self.services.ledger.get_sources(target.id, StateType.VISIBILITY.value, observer.id)
            if s.type == OperationKind.OVERRIDE_VISIBILITY
        ]
        winner = SourceLedger.get_highest_priority_source(sources)
        if winner is not None and winner.state:
            yield CheckerResult(state=winner.state, source=winner.id, priority=winner.priority, type=OVERRIDE)

    def _conditional_result(
        self,
        operation: ConditionalStateOperation,
        subject: TokenState,
        priority: Optional[int] = None,
    ) -> Optional[CheckerResult]:
        if operation.state_type != StateType.VISIBILITY:
            return None
        subject = self._live_token(subject)
        met = bool(
            operation.condition
            and subject.actor is not None
            and operation.condition in subject.actor.conditions
        )
        state = operation.then_state if met else operation.else_state
        if state is None:
            return None
        return CheckerResult(
            state=state,
            source=operation.source,
            priority=priority if priority is not None else self._priority(operation),
            type=CONDITIONAL,
            condition_met=met,
        )

    def _conditionals(self, observer: TokenState, target: TokenState) -> Iterator[CheckerResult]:
        for record, subject, counterpart in self._directed_records(CONDITIONAL_FLAG, observer, target):
            operation = ConditionalStateOperation.model_validate(record)
            if not self._applies(operation, subject, counterpart, operation.range):
                continue
            result = self._conditional_result(operation, subject)
            if result is not None:
                yield result

    def _distance_bands(self, observer: TokenState, target: TokenState) -> Iterator[CheckerResult]:
        scene = self.services.scene
        for record, subject, counterpart in self._directed_records(DISTANCE_FLAG, observer, target):
            operation = DistanceBasedVisibilityOperation.model_validate(record)
            if not self._applies(operation, subject, counterpart):
                continue
            distance = scene.distance(observer, target)
            band = select_band(operation.distance_bands, distance)
            if band is not None:
                yield CheckerResult(
                    state=band.state,
                    source=operation.source,
                    priority=self._priority(operation),
                    type=DISTANCE,
                    distance=distance,
                )
            elif operation.fallback is not None:
                result = self._conditional_result(operation.fallback, subject, self._priority(operation))
                if result is not None:
                    yield result.model_copy(update={"distance": distance, "source": operation.source})

    def _auras(self, observer: TokenState, target: TokenState) -> Iterator[CheckerResult]:
        scene = self.services.scene
        predicates = self.services.predicates
        for owner_id, record in all_keyed_records(self.services.flags, AURA_FLAG):
            owner = scene.get_token(owner_id)
            if owner is None:
                continue
            operation = AuraVisibilityOperation.model_validate(record)
            if operation.source_exempt and owner_id in (observer.id, target.id):
                continue
            if not predicates.evaluate(operation.predicate, predicates.token_options(owner)):
                continue
            if not self._aura_targets(owner, operation, observer, target):
                continue

            observer_inside = self._inside(owner, observer, operation.aura_radius)
            target_inside = self._inside(owner, target, operation.aura_radius)
            if observer_inside == target_inside:
                continue
            state = operation.inside_outside_state if observer_inside else operation.outside_inside_state
            yield CheckerResult(
                state=state,
                source=operation.source,
                priority=self._priority(operation),
                type=AURA,
                distance=scene.distance(owner, target),
            )

    def _inside(self, owner: TokenState, token: TokenState, radius: float) -> bool:
        if token.id == owner.id:
            return True
        return self.services.scene.distance(owner, token) <= radius

    def _aura_targets(self, owner: TokenState, operation: AuraVisibilityOperation, *tokens: TokenState) -> bool:
        scene = self.services.scene
        return all(
            token.id == owner.id or scene.selector_matches(owner, token, operation.aura_targets)
            for token in tokens
        )
