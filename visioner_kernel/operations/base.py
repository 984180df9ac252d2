"""
Operation handler plumbing shared by every operation kind.

A handler exposes apply(operation, subject, ctx) and remove(operation,
subject, ctx). Collaborators arrive through OperationServices; nothing is
looked up globally.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from visioner_kernel.ledger.store import SourceLedger
from visioner_kernel.models.config import KernelConfig
from visioner_kernel.models.operation import OperationBase, OperationKind
from visioner_kernel.models.scene import TokenState
from visioner_kernel.predicate.evaluator import PredicateEvaluator
from visioner_kernel.scene.recalculation import RecalculationTrigger, RecordingRecalculationTrigger
from visioner_kernel.scene.store import FlagStore, PerceptionMapStore, SceneStore

logger = logging.getLogger(__name__)


class OperationConfigError(Exception):
    """Raised when an operation is missing or carries invalid parameters."""
    pass


def flag_key(value: str) -> str:
    """Escape a value for use as one segment of a dotted flag path."""
    return value.replace(".", "___")


class OperationServices:
    """The collaborators every handler works against."""

    def __init__(
        self,
        scene: SceneStore,
        flags: FlagStore,
        ledger: SourceLedger,
        maps: PerceptionMapStore,
        predicates: Optional[PredicateEvaluator] = None,
        recalc: Optional[RecalculationTrigger] = None,
        config: Optional[KernelConfig] = None,
    ):
        self.scene = scene
        self.flags = flags
        self.ledger = ledger
        self.maps = maps
        self.predicates = predicates or PredicateEvaluator()
        self.recalc = recalc or RecordingRecalculationTrigger()
        self.config = config or KernelConfig()


class ApplyContext:
    """
    Per-lifecycle bookkeeping: which rule element is acting, the operation's
    position in its merged list, the tokens whose perception may have
    changed, and every flag path written (for registry teardown).
    """

    def __init__(self, rule_element_id: Optional[str] = None, index: int = 0):
        self.rule_element_id = rule_element_id
        self.index = index
        self.affected: Set[str] = set()
        self.owned_flags: List[Tuple[str, str]] = []

    def touch(self, *token_ids: str) -> None:
        self.affected.update(t for t in token_ids if t)

    def own_flag(self, token_id: str, path: str) -> None:
        entry = (token_id, path)
        if entry not in self.owned_flags:
            self.owned_flags.append(entry)


class OperationHandler:
    """
    Base class for one operation kind. Subclasses implement _apply/_remove.
    Called without a context, a handler flushes its own recalculation.
    """

    kind: OperationKind

    def __init__(self, services: OperationServices):
        self.services = services

    def apply(self, operation: OperationBase, subject: Optional[TokenState], ctx: Optional[ApplyContext] = None) -> None:
        if subject is None:
            return
        standalone = ctx is None
        ctx = ctx or ApplyContext()
        self._apply(operation, subject, ctx)
        if standalone:
            self.services.recalc.recalculate_for_tokens(ctx.affected)

    def remove(self, operation: OperationBase, subject: Optional[TokenState], ctx: Optional[ApplyContext] = None) -> None:
        if subject is None:
            return
        standalone = ctx is None
        ctx = ctx or ApplyContext()
        self._remove(operation, subject, ctx)
        if standalone:
            self.services.recalc.recalculate_for_tokens(ctx.affected)

    def _apply(self, operation: OperationBase, subject: TokenState, ctx: ApplyContext) -> None:
        raise NotImplementedError

    def _remove(self, operation: OperationBase, subject: TokenState, ctx: ApplyContext) -> None:
        raise NotImplementedError

    # --- Helpers ---

    def source_id(self, operation: OperationBase, subject: TokenState, ctx: ApplyContext) -> str:
        if operation.source:
            return operation.source
        if ctx.rule_element_id:
            return f"{ctx.rule_element_id}/{operation.type}/{ctx.index}"
        return f"{operation.type}-{subject.id}"

    def priority(self, operation: OperationBase) -> int:
        if operation.priority is not None:
            return operation.priority
        return self.services.config.default_priority(operation.kind)

    def subject_passes(self, operation: OperationBase, subject: TokenState) -> bool:
        predicates = self.services.predicates
        return predicates.evaluate(operation.predicate, predicates.token_options(subject))

    def pair_passes(self, operation: OperationBase, subject: TokenState, counterpart: TokenState) -> bool:
        predicates = self.services.predicates
        passed = predicates.evaluate(operation.predicate, predicates.pair_options(subject, counterpart))
        if not passed:
            logger.debug(
                "Predicate excluded %s for %s/%s", operation.type, subject.id, counterpart.id
            )
        return passed

    def write_keyed_flag(self, subject: TokenState, family: str, key: str, value: Dict[str, Any], ctx: ApplyContext) -> str:
        path = f"{family}.{flag_key(key)}"
        self.services.flags.replace_flag(subject.id, path, value)
        ctx.own_flag(subject.id, path)
        return path

    def unset_keyed_flag(self, subject: TokenState, family: str, key: str) -> bool:
        return self.services.flags.unset_flag(subject.id, f"{family}.{flag_key(key)}")


def operation_record(
    operation: OperationBase,
    source_id: str,
    priority: int,
    ctx: ApplyContext,
    **extra: Any,
) -> Dict[str, Any]:
    """
    The flag form of a query-time operation: its own wire form plus the
    resolved source id, priority and owning rule element. Readers parse it
    back with the operation's model.
    """
    record = operation.to_wire()
    record["source"] = source_id
    record["priority"] = priority
    if ctx.rule_element_id:
        record["ruleElementId"] = ctx.rule_element_id
    record.update({k: v for k, v in extra.items() if v is not None})
    return record


def keyed_records(flags: FlagStore, token_id: str, family: str) -> List[Dict[str, Any]]:
    raw = flags.get_flag(token_id, family, {}) or {}
    return [r for r in raw.values() if isinstance(r, dict)]


def all_keyed_records(flags: FlagStore, family: str) -> Iterable[Tuple[str, Dict[str, Any]]]:
    for token_id in flags.tokens_with_flag(family):
        for record in keyed_records(flags, token_id, family):
            yield token_id, record
