"""
Rule Element Service — composition root for the rule element kernel.

Wires the stores, ledger, predicate evaluator, operation dispatcher,
qualification engine, checker and cover service together, and keeps the
live rule elements per (token, effect item).
"""

import logging
from typing import Dict, List, Optional, Tuple

from visioner_kernel.checker.cover import RuleElementCoverService
from visioner_kernel.checker.resolver import RuleElementChecker
from visioner_kernel.ledger.store import DedupGuard, SourceLedger
from visioner_kernel.models.config import KernelConfig
from visioner_kernel.models.rule_element import EffectItem
from visioner_kernel.models.states import EncounterEvent
from visioner_kernel.operations.base import OperationServices
from visioner_kernel.operations.registry import OperationDispatcher
from visioner_kernel.predicate.evaluator import PredicateBackend, PredicateEvaluator
from visioner_kernel.qualification.engine import QualificationEngine
from visioner_kernel.rule_element.container import RuleElement
from visioner_kernel.scene.recalculation import RecalculationTrigger, RecordingRecalculationTrigger
from visioner_kernel.scene.store import FlagStore, PerceptionMapStore, SceneStore

logger = logging.getLogger(__name__)


class RuleElementService:
    """
    Owns the rule elements of every effect on every token and drives their
    lifecycle from host events.
    """

    def __init__(
        self,
        config: Optional[KernelConfig] = None,
        scene: Optional[SceneStore] = None,
        flags: Optional[FlagStore] = None,
        maps: Optional[PerceptionMapStore] = None,
        recalc: Optional[RecalculationTrigger] = None,
        predicate_backend: Optional[PredicateBackend] = None,
    ):
        self.config = config or KernelConfig()
        self.scene = scene or SceneStore()
        self.flags = flags or FlagStore(self.config.flag_namespace)
        self.maps = maps or PerceptionMapStore()
        self.recalc = recalc or RecordingRecalculationTrigger()
        self.ledger = SourceLedger(
            self.flags,
            self.scene,
            DedupGuard(self.config.dedup_window_seconds, self.config.dedup_max_entries),
        )
        self.services = OperationServices(
            scene=self.scene,
            flags=self.flags,
            ledger=self.ledger,
            maps=self.maps,
            predicates=PredicateEvaluator(predicate_backend),
            recalc=self.recalc,
            config=self.config,
        )
        self.dispatcher = OperationDispatcher(self.services)
        self.qualifications = QualificationEngine(self.ledger, self.flags, self.scene)
        self.checker = RuleElementChecker(self.services)
        self.cover = RuleElementCoverService(self.services)

        self._effects: Dict[Tuple[str, str], List[RuleElement]] = {}
        self._items: Dict[Tuple[str, str], EffectItem] = {}

    # --- Configuration ---

    def update_config(self, config: KernelConfig) -> None:
        self.config = config
        self.services.config = config
        self.flags.namespace = config.flag_namespace
        self.ledger.dedup.window_seconds = config.dedup_window_seconds
        self.ledger.dedup.max_entries = config.dedup_max_entries
        logger.info("Kernel configuration updated")

    # --- Effects ---

    def _build(self, token_id: str, item: EffectItem) -> List[RuleElement]:
        return [
            RuleElement(spec, item, token_id, self.services, self.dispatcher, index=i)
            for i, spec in enumerate(item.visioner_rules())
        ]

    def get_effect(self, token_id: str, item_id: str) -> Optional[EffectItem]:
        return self._items.get((token_id, item_id))

    def get_rule_elements(self, token_id: str, item_id: str) -> List[RuleElement]:
        return list(self._effects.get((token_id, item_id), []))

    def list_effects(self, token_id: str) -> List[EffectItem]:
        return [item for (tid, _), item in self._items.items() if tid == token_id]

    def create_effect(self, token_id: str, item: EffectItem) -> List[RuleElement]:
        """Attach an effect item to a token and create its rule elements."""
        key = (token_id, item.id)
        if key in self._effects:
            self.update_effect(token_id, item)
            return self.get_rule_elements(token_id, item.id)

        elements = self._build(token_id, item)
        self._effects[key] = elements
        self._items[key] = item
        for element in elements:
            element.on_create()
        logger.info("Effect %s (%s) created on %s with %d rule element(s)", item.name, item.id, token_id, len(elements))
        return elements

    def update_effect(self, token_id: str, item: EffectItem) -> Optional[List[RuleElement]]:
        """Reapply an effect's rule elements from the item's new definition."""
        key = (token_id, item.id)
        current = self._effects.get(key)
        if current is None:
            return None

        specs = item.visioner_rules()
        updated: List[RuleElement] = []
        for i, spec in enumerate(specs):
            if i < len(current) and current[i].spec.slug == spec.slug:
                current[i].on_update(spec, item)
                updated.append(current[i])
            else:
                if i < len(current):
                    current[i].on_delete()
                element = RuleElement(spec, item, token_id, self.services, self.dispatcher, index=i)
                element.on_create()
                updated.append(element)
        for stale in current[len(specs):]:
            stale.on_delete()

        self._effects[key] = updated
        self._items[key] = item
        return updated

    def delete_effect(self, token_id: str, item_id: str) -> bool:
        key = (token_id, item_id)
        elements = self._effects.pop(key, None)
        self._items.pop(key, None)
        if elements is None:
            return False
        for element in elements:
            element.on_delete()
        return True

    def handle_encounter_event(self, token_id: str, event: EncounterEvent) -> int:
        """Refresh every rule element on the token. Returns how many ran."""
        refreshed = 0
        for (tid, _), elements in self._effects.items():
            if tid != token_id:
                continue
            for element in elements:
                if element.on_encounter_event(event):
                    refreshed += 1
        return refreshed
