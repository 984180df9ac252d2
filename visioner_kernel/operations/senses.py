"""
Sense and detection-mode handlers.

The first mutation by a rule element snapshots the token's current senses
(or detection modes) under originalPerception.{ruleElementId}. Every apply
recomputes from that snapshot, so repeated applies never compound, and
removal restores the snapshot exactly.
"""

import logging
from typing import Dict, List, Optional

from visioner_kernel.models.operation import (
    ModifyDetectionModesOperation,
    ModifySensesOperation,
    OperationKind,
    SenseModification,
)
from visioner_kernel.models.scene import DetectionMode, Sense, TokenState
from visioner_kernel.models.states import SenseAcuity
from visioner_kernel.operations.base import (
    ApplyContext,
    OperationHandler,
    flag_key,
)

logger = logging.getLogger(__name__)

SNAPSHOT_FLAG = "originalPerception"
ALL = "all"


def _exceeds(range_value: Optional[float], limit: float) -> bool:
    return range_value is None or range_value > limit


def modify_sense(sense: Sense, mod: SenseModification, named: bool) -> Sense:
    """
    Apply one modification. Named modifications may set range and acuity;
    the "all" wildcard only limits range.
    """
    updates: Dict[str, object] = {}
    if named and mod.range is not None:
        updates["range"] = mod.range
    if named and mod.precision is not None:
        updates["acuity"] = mod.precision

    if mod.max_range is not None:
        current = updates.get("range", sense.range)
        if _exceeds(current, mod.max_range):
            if mod.beyond_is_imprecise:
                updates["acuity"] = SenseAcuity.IMPRECISE.value
            else:
                updates["range"] = mod.max_range
    return sense.model_copy(update=updates)


def modify_senses(senses: List[Sense], mods: Dict[str, SenseModification]) -> List[Sense]:
    result = []
    for sense in senses:
        if sense.type in mods:
            sense = modify_sense(sense, mods[sense.type], named=True)
        if ALL in mods:
            sense = modify_sense(sense, mods[ALL], named=False)
        result.append(sense)

    present = {s.type for s in senses}
    for sense_type, mod in mods.items():
        if sense_type == ALL or sense_type in present or mod.range is None:
            continue
        result.append(Sense(type=sense_type, acuity=mod.precision or SenseAcuity.PRECISE, range=mod.range))
    return result


def modify_detection_modes(modes: List[DetectionMode], mods: Dict[str, SenseModification]) -> List[DetectionMode]:
    result = []
    for mode in modes:
        updates: Dict[str, object] = {}
        mod = mods.get(mode.id)
        if mod is not None and mod.range is not None:
            updates["range"] = mod.range
        for limit in (mod, mods.get(ALL)):
            if limit is None or limit.max_range is None:
                continue
            current = updates.get("range", mode.range)
            if _exceeds(current, limit.max_range):
                updates["range"] = limit.max_range
        result.append(mode.model_copy(update=updates))

    present = {m.id for m in modes}
    for mode_id, mod in mods.items():
        if mode_id == ALL or mode_id in present or mod.range is None:
            continue
        result.append(DetectionMode(id=mode_id, enabled=True, range=mod.range))
    return result


def snapshot_key(subject: TokenState, ctx: ApplyContext) -> str:
    return flag_key(ctx.rule_element_id or f"adhoc-{subject.id}")


class ModifySensesHandler(OperationHandler):
    kind = OperationKind.MODIFY_SENSES

    def _snapshot_path(self, subject: TokenState, ctx: ApplyContext) -> str:
        return f"{SNAPSHOT_FLAG}.{snapshot_key(subject, ctx)}.senses"

    def _apply(self, operation: ModifySensesOperation, subject: TokenState, ctx: ApplyContext) -> None:
        if subject.actor is None or not operation.sense_modifications:
            return
        if not self.subject_passes(operation, subject):
            logger.debug("modifySenses predicate failed on %s", subject.id)
            self._remove(operation, subject, ctx)
            return

        flags = self.services.flags
        path = self._snapshot_path(subject, ctx)
        snapshot = flags.get_flag(subject.id, path)
        if snapshot is None:
            live = self.services.scene.get_token(subject.id) or subject
            snapshot = [s.to_wire() for s in live.actor.senses]
            flags.replace_flag(subject.id, path, snapshot)
        ctx.own_flag(subject.id, path)

        original = [Sense.model_validate(s) for s in snapshot]
        self.services.scene.update_senses(
            subject.id, modify_senses(original, operation.sense_modifications)
        )
        ctx.touch(subject.id)

    def _remove(self, operation: ModifySensesOperation, subject: TokenState, ctx: ApplyContext) -> None:
        flags = self.services.flags
        path = self._snapshot_path(subject, ctx)
        snapshot = flags.get_flag(subject.id, path)
        if snapshot is None:
            return
        self.services.scene.update_senses(subject.id, [Sense.model_validate(s) for s in snapshot])
        flags.unset_flag(subject.id, path)
        ctx.touch(subject.id)


class ModifyDetectionModesHandler(OperationHandler):
    kind = OperationKind.MODIFY_DETECTION_MODES

    def _snapshot_path(self, subject: TokenState, ctx: ApplyContext) -> str:
        return f"{SNAPSHOT_FLAG}.{snapshot_key(subject, ctx)}.detectionModes"

    def _apply(self, operation: ModifyDetectionModesOperation, subject: TokenState, ctx: ApplyContext) -> None:
        if not operation.mode_modifications:
            return
        if not self.subject_passes(operation, subject):
            logger.debug("modifyDetectionModes predicate failed on %s", subject.id)
            self._remove(operation, subject, ctx)
            return

        flags = self.services.flags
        path = self._snapshot_path(subject, ctx)
        snapshot = flags.get_flag(subject.id, path)
        if snapshot is None:
            live = self.services.scene.get_token(subject.id) or subject
            snapshot = [m.to_wire() for m in live.detection_modes]
            flags.replace_flag(subject.id, path, snapshot)
        ctx.own_flag(subject.id, path)

        original = [DetectionMode.model_validate(m) for m in snapshot]
        self.services.scene.update_detection_modes(
            subject.id, modify_detection_modes(original, operation.mode_modifications)
        )
        ctx.touch(subject.id)

    def _remove(self, operation: ModifyDetectionModesOperation, subject: TokenState, ctx: ApplyContext) -> None:
        flags = self.services.flags
        path = self._snapshot_path(subject, ctx)
        snapshot = flags.get_flag(subject.id, path)
        if snapshot is None:
            return
        self.services.scene.update_detection_modes(
            subject.id, [DetectionMode.model_validate(m) for m in snapshot]
        )
        flags.unset_flag(subject.id, path)
        ctx.touch(subject.id)


def get_sense_capabilities(token: Optional[TokenState]) -> Dict[str, Dict[str, Optional[float]]]:
    """Senses partitioned by acuity: {"precise": {type: range}, "imprecise": ..., "vague": ...}."""
    capabilities: Dict[str, Dict[str, Optional[float]]] = {
        SenseAcuity.PRECISE.value: {},
        SenseAcuity.IMPRECISE.value: {},
        SenseAcuity.VAGUE.value: {},
    }
    if token is None or token.actor is None:
        return capabilities
    for sense in token.actor.senses:
        capabilities[sense.acuity][sense.type] = sense.range
    return capabilities


def get_detection_mode_capabilities(token: Optional[TokenState]) -> Dict[str, Optional[float]]:
    """Enabled detection modes and their ranges (None means unlimited)."""
    if token is None:
        return {}
    return {m.id: m.range for m in token.detection_modes if m.enabled}
