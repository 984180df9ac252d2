"""
Rule Element Cover Service — cover decisions for attacks.

Consulted by the host's auto-cover step: whether a rule element pins the
cover between an attacker and a target, whether a blocker may grant cover at
all, and what cover a provideCover token grants a receiver.
"""

import logging
from typing import Iterable, List, Optional

from visioner_kernel.ledger.store import SourceLedger
from visioner_kernel.models.operation import ProvideCoverOperation
from visioner_kernel.models.results import CoverPermission, ProvidedCover
from visioner_kernel.models.scene import TokenState
from visioner_kernel.models.states import AutoCoverBehavior, CoverEdge, CoverState, Direction, StateType
from visioner_kernel.operations.base import OperationServices, keyed_records
from visioner_kernel.operations.cover import PROVIDES_COVER_FLAG

logger = logging.getLogger(__name__)

RANGED_OPTIONS = ("item:ranged", "item:trait:ranged")
TAKEN_COVER_FLAG = "hasTakenCover"

COVER_ORDER = [CoverState.NONE.value, CoverState.LESSER.value, CoverState.STANDARD.value, CoverState.GREATER.value]


def is_ranged_attack(attack_options: Optional[Iterable[str]]) -> bool:
    if not attack_options:
        return False
    options = set(attack_options)
    return any(opt in options for opt in RANGED_OPTIONS)


def attack_edge(provider: TokenState, attacker: TokenState) -> str:
    """The provider's edge facing the attacker. Scene y grows southward."""
    dx = attacker.x - provider.x
    dy = attacker.y - provider.y
    if abs(dy) >= abs(dx):
        return CoverEdge.NORTH.value if dy < 0 else CoverEdge.SOUTH.value
    return CoverEdge.WEST.value if dx < 0 else CoverEdge.EAST.value


def combine_cover(auto_state: str, provided: ProvidedCover) -> str:
    """Fold provided cover into the geometric auto-cover result."""
    auto_level = COVER_ORDER.index(auto_state) if auto_state in COVER_ORDER else 0
    provided_level = COVER_ORDER.index(provided.state)
    if provided.behavior == AutoCoverBehavior.MINIMUM:
        return COVER_ORDER[max(auto_level, provided_level)]
    if provided.behavior == AutoCoverBehavior.ADD:
        return COVER_ORDER[min(auto_level + provided_level, len(COVER_ORDER) - 1)]
    return provided.state


class RuleElementCoverService:
    def __init__(self, services: OperationServices):
        self.services = services

    def _cover_winner(self, holder: TokenState, observer_id: str):
        sources = self.services.ledger.get_sources(holder.id, StateType.COVER.value, observer_id)
        return SourceLedger.get_highest_priority_source(sources)

    def get_cover_from_rule_elements(self, attacker: TokenState, target: TokenState) -> Optional[ProvidedCover]:
        """The cover a rule element pins between attacker and target, if any."""
        winner = self._cover_winner(target, attacker.id)
        if winner is None:
            return None
        return ProvidedCover(
            state=winner.state or CoverState.NONE.value,
            source=winner.id,
            priority=winner.priority,
        )

    def can_token_provide_cover_to_target(
        self,
        blocker: TokenState,
        target: TokenState,
        attack_options: Optional[List[str]] = None,
    ) -> CoverPermission:
        """
        A blocker whose winning cover source on the target is "none" (and
        either prevents auto cover or points at the target) grants no cover.
        Ranged-only rules only apply to ranged attacks.
        """
        winner = self._cover_winner(target, blocker.id)
        if winner is None or winner.state != CoverState.NONE:
            return CoverPermission(allowed=True)
        if not (winner.prevent_auto_cover or winner.direction == Direction.TO):
            return CoverPermission(allowed=True)

        ranged_only = any(term in RANGED_OPTIONS for term in (winner.predicate or []) if isinstance(term, str))
        if ranged_only and not is_ranged_attack(attack_options):
            return CoverPermission(allowed=True)

        logger.debug("Blocker %s denied cover to %s by %s", blocker.id, target.id, winner.id)
        return CoverPermission(
            allowed=False,
            rule_element={
                "blockerId": blocker.id,
                "blockerName": blocker.name,
                "source": winner.id,
                "type": winner.type,
            },
        )

    def get_cover_from_token(
        self,
        provider: TokenState,
        receiver: TokenState,
        attacker: TokenState,
        attack_options: Optional[List[str]] = None,
    ) -> Optional[ProvidedCover]:
        """Highest-priority provideCover rule on the provider that covers this attack."""
        services = self.services
        predicates = services.predicates
        options = predicates.combine(predicates.token_options(receiver), attack_options or [])
        has_taken_cover = bool(services.flags.get_flag(receiver.id, TAKEN_COVER_FLAG, False))
        edge = attack_edge(provider, attacker)

        best: Optional[ProvidedCover] = None
        for record in keyed_records(services.flags, provider.id, PROVIDES_COVER_FLAG):
            operation = ProvideCoverOperation.model_validate(record)
            if operation.range is not None and services.scene.distance(attacker, receiver) > operation.range:
                continue
            if operation.requires_take_cover and not has_taken_cover:
                continue
            if operation.blocked_edges and edge not in operation.blocked_edges:
                continue
            if not predicates.evaluate(operation.predicate, options):
                continue
            priority = record.get("priority", 100)
            if best is None or priority > best.priority:
                best = ProvidedCover(
                    state=operation.state,
                    source=operation.source,
                    priority=priority,
                    behavior=operation.auto_cover_behavior,
                )
        return best
