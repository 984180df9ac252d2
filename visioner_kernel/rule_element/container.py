"""
Rule Element Container — lifecycle binding for one authored rule element.

Lifecycle: uninitialized -> applied -> (updated ->) applied -> removed

Behavioral Contract:
- A failing top-level predicate means none of the operations run
- Operations are smart-merged before applying; each merged operation gets a
  deterministic source id "{ruleElementId}/{type}/{index}"
- A failure in one operation never stops its siblings; a failed apply is
  compensated by that operation's remove
- Update always tears down everything this rule element owns (operation
  removes, registered flags, tagged ledger sources) before reapplying
- Delete runs every remove, the registry teardown and the ledger sweep,
  then issues exactly one recalculation
"""

import logging
from enum import Enum
from typing import Dict, List, Optional

from visioner_kernel.models.operation import OperationBase
from visioner_kernel.models.rule_element import EffectItem, RuleElementSpec
from visioner_kernel.models.scene import TokenState
from visioner_kernel.operations.base import (
    ApplyContext,
    OperationConfigError,
    OperationServices,
    flag_key,
)
from visioner_kernel.operations.registry import OperationDispatcher
from visioner_kernel.rule_element.merge import compatibility_warnings, smart_merge
from visioner_kernel.scene.store import FlagWriteError

logger = logging.getLogger(__name__)

REGISTRY_FLAG = "ruleElementRegistry"


class LifecycleState(str, Enum):
    UNINITIALIZED = "uninitialized"
    APPLIED = "applied"
    REMOVED = "removed"


def build_rule_element_id(item_id: str, slug: Optional[str], index: int = 0) -> str:
    if slug:
        return f"{item_id}-{slug}"
    return f"{item_id}-effect" if index == 0 else f"{item_id}-effect-{index}"


class RuleElement:
    """One rule element of an effect item, bound to the token that owns the item."""

    def __init__(
        self,
        spec: RuleElementSpec,
        item: EffectItem,
        owner_id: str,
        services: OperationServices,
        dispatcher: OperationDispatcher,
        index: int = 0,
    ):
        self.spec = spec
        self.item = item
        self.owner_id = owner_id
        self.services = services
        self.dispatcher = dispatcher
        self.index = index
        self.rule_element_id = build_rule_element_id(item.id, spec.slug, index)
        self.state = LifecycleState.UNINITIALIZED
        self._applied: Optional[List[OperationBase]] = None

    @property
    def label(self) -> str:
        return self.item.name or self.rule_element_id

    @property
    def registry_path(self) -> str:
        return f"{REGISTRY_FLAG}.{flag_key(self.rule_element_id)}"

    def merged_operations(self) -> List[OperationBase]:
        config = self.services.config

        def priority(op: OperationBase) -> int:
            return op.priority if op.priority is not None else config.default_priority(op.kind)

        return smart_merge(list(self.spec.operations), priority)

    def _owner(self) -> Optional[TokenState]:
        return self.services.scene.get_token(self.owner_id)

    # --- Lifecycle ---

    def on_create(self) -> bool:
        owner = self._owner()
        if owner is None:
            logger.debug("Owner token %s missing; %s not applied", self.owner_id, self.rule_element_id)
            return False

        ctx = ApplyContext(self.rule_element_id)
        self._apply_all(owner, ctx)
        self._record_registry(owner, ctx)
        self._flush(ctx)
        self.state = LifecycleState.APPLIED
        logger.info("Rule element %s created on %s", self.rule_element_id, owner.id)
        return True

    def on_update(self, spec: Optional[RuleElementSpec] = None, item: Optional[EffectItem] = None) -> bool:
        owner = self._owner()
        if owner is None:
            return False

        ctx = ApplyContext(self.rule_element_id)
        self._teardown(owner, ctx)
        if spec is not None:
            self.spec = spec
        if item is not None:
            self.item = item
        # Teardown may have restored senses on the owner
        owner = self._owner() or owner
        self._apply_all(owner, ctx)
        self._record_registry(owner, ctx)
        self._flush(ctx)
        self.state = LifecycleState.APPLIED
        logger.info("Rule element %s updated on %s", self.rule_element_id, owner.id)
        return True

    def on_delete(self) -> bool:
        owner = self._owner()
        ctx = ApplyContext(self.rule_element_id)
        if owner is not None:
            self._teardown(owner, ctx)
        else:
            ctx.touch(*self.services.ledger.remove_rule_element_sources(self.rule_element_id))
        self._flush(ctx)
        self.state = LifecycleState.REMOVED
        logger.info("Rule element %s deleted from %s", self.rule_element_id, self.owner_id)
        return True

    def on_encounter_event(self, event: str) -> bool:
        """Turn start/end: reapply so condition- and position-dependent rules refresh."""
        owner = self._owner()
        if owner is None or self.state == LifecycleState.REMOVED:
            return False
        ctx = ApplyContext(self.rule_element_id)
        self._apply_all(owner, ctx)
        self._record_registry(owner, ctx)
        self._flush(ctx)
        logger.debug("Rule element %s refreshed on %s", self.rule_element_id, event)
        return True

    # --- Internals ---

    def _predicate_passes(self, owner: TokenState) -> bool:
        predicates = self.services.predicates
        return predicates.evaluate(self.spec.predicate, predicates.token_options(owner))

    def _apply_all(self, owner: TokenState, ctx: ApplyContext) -> None:
        if not self._predicate_passes(owner):
            logger.info("Predicate not met for %s on %s", self.rule_element_id, owner.id)
            if self._applied:
                self._remove_operations(owner, ctx, self._applied)
            self._applied = []
            return

        compatibility_warnings(list(self.spec.operations), self.label)
        operations = self.merged_operations()
        for index, operation in enumerate(operations):
            ctx.index = index
            try:
                self.dispatcher.apply(operation, owner, ctx)
            except OperationConfigError as e:
                logger.warning("Skipping %s in %s: %s", operation.type, self.rule_element_id, e)
            except FlagWriteError as e:
                logger.error("Flag write failed applying %s in %s: %s", operation.type, self.rule_element_id, e)
                self._compensate(operation, owner, ctx)
            except Exception:
                logger.error(
                    "Unexpected error applying %s in %s", operation.type, self.rule_element_id, exc_info=True
                )
                self._compensate(operation, owner, ctx)
        self._applied = operations

    def _compensate(self, operation: OperationBase, owner: TokenState, ctx: ApplyContext) -> None:
        try:
            self.dispatcher.remove(operation, owner, ctx)
        except Exception:
            logger.error("Compensating remove of %s failed", operation.type, exc_info=True)

    def _remove_operations(self, owner: TokenState, ctx: ApplyContext, operations: List[OperationBase]) -> None:
        for index, operation in enumerate(operations):
            ctx.index = index
            try:
                self.dispatcher.remove(operation, owner, ctx)
            except Exception:
                logger.error(
                    "Error removing %s in %s", operation.type, self.rule_element_id, exc_info=True
                )

    def _teardown(self, owner: TokenState, ctx: ApplyContext) -> None:
        """Operation removes, then registered flags, then tagged ledger sources."""
        applied = self._applied if self._applied is not None else self.merged_operations()
        self._remove_operations(owner, ctx, applied)
        self._applied = None

        flags = self.services.flags
        for entry in flags.get_flag(owner.id, self.registry_path, []) or []:
            token_id, path = entry.get("tokenId"), entry.get("path")
            if token_id and path and flags.unset_flag(token_id, path):
                ctx.touch(token_id)
        flags.unset_flag(owner.id, self.registry_path)
        ctx.owned_flags.clear()

        ctx.touch(*self.services.ledger.remove_rule_element_sources(self.rule_element_id))

    def _record_registry(self, owner: TokenState, ctx: ApplyContext) -> None:
        flags = self.services.flags
        entries: List[Dict[str, str]] = flags.get_flag(owner.id, self.registry_path, []) or []
        for token_id, path in ctx.owned_flags:
            entry = {"tokenId": token_id, "path": path}
            if entry not in entries:
                entries.append(entry)
        if not entries:
            return
        try:
            flags.replace_flag(owner.id, self.registry_path, entries)
        except FlagWriteError as e:
            logger.error("Could not record flag registry for %s: %s", self.rule_element_id, e)

    def _flush(self, ctx: ApplyContext) -> None:
        if ctx.affected:
            self.services.recalc.recalculate_for_tokens(ctx.affected)
