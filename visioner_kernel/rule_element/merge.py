"""
Smart merge — coalesces compatible operations within one rule element.

The table of mergeable pairs is closed: any pair not listed is applied
independently. Merging scans forward like this:

    for each unmerged operation i:
        fold every later unmerged operation j into i when (i, j) merges

A distanceBasedVisibility only absorbs a conditionalState that directly
follows it, as its fallback.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from visioner_kernel.models.operation import OperationBase, OperationKind
from visioner_kernel.models.source import ActionQualification

logger = logging.getLogger(__name__)

PriorityFn = Callable[[OperationBase], int]
MergeFn = Callable[[OperationBase, OperationBase, PriorityFn], Optional[OperationBase]]


def _merge_maps(field: str) -> MergeFn:
    def merge(first, second, priority):
        combined = dict(getattr(first, field))
        combined.update(getattr(second, field))
        return first.model_copy(update={field: combined})
    return merge


def _merge_qualifications(first, second, priority):
    combined: Dict[str, ActionQualification] = dict(first.qualifications)
    for action, qualification in second.qualifications.items():
        existing = combined.get(action)
        if existing is None:
            combined[action] = qualification
        else:
            fields = qualification.model_dump(exclude_none=True)
            combined[action] = existing.model_copy(update=fields)
    return first.model_copy(update={"qualifications": combined})


def _higher_priority(first, second, priority):
    """The higher priority operation survives; the first wins ties."""
    return second if priority(second) > priority(first) else first


def _higher_priority_same_mode(first, second, priority):
    if first.is_replacement != second.is_replacement:
        return None
    return _higher_priority(first, second, priority)


MERGE_TABLE: Dict[Tuple[str, str], MergeFn] = {
    (OperationKind.MODIFY_SENSES.value, OperationKind.MODIFY_SENSES.value): _merge_maps("sense_modifications"),
    (OperationKind.MODIFY_DETECTION_MODES.value, OperationKind.MODIFY_DETECTION_MODES.value): _merge_maps("mode_modifications"),
    (OperationKind.MODIFY_ACTION_QUALIFICATION.value, OperationKind.MODIFY_ACTION_QUALIFICATION.value): _merge_qualifications,
    (OperationKind.OVERRIDE_VISIBILITY.value, OperationKind.OVERRIDE_VISIBILITY.value): _higher_priority_same_mode,
    (OperationKind.MODIFY_LIGHTING.value, OperationKind.MODIFY_LIGHTING.value): _higher_priority,
    (OperationKind.OVERRIDE_COVER.value, OperationKind.OVERRIDE_COVER.value): _higher_priority,
}


def _default_priority(operation: OperationBase) -> int:
    return operation.priority if operation.priority is not None else 100


def smart_merge(operations: List[OperationBase], priority: Optional[PriorityFn] = None) -> List[OperationBase]:
    priority = priority or _default_priority
    merged: List[OperationBase] = []
    consumed = set()

    for i, current in enumerate(operations):
        if i in consumed:
            continue
        consumed.add(i)

        for j in range(i + 1, len(operations)):
            if j in consumed:
                continue
            candidate = operations[j]

            if (
                current.type == OperationKind.DISTANCE_BASED_VISIBILITY
                and candidate.type == OperationKind.CONDITIONAL_STATE
            ):
                if j == i + 1 and current.fallback is None:
                    current = current.model_copy(update={"fallback": candidate})
                    consumed.add(j)
                continue

            merge = MERGE_TABLE.get((current.type, candidate.type))
            if merge is None:
                continue
            result = merge(current, candidate, priority)
            if result is not None:
                current = result
                consumed.add(j)

        merged.append(current)

    if len(merged) != len(operations):
        logger.debug("Smart merge reduced %d operation(s) to %d", len(operations), len(merged))
    return merged


_WARNING_GROUPS = (
    ("visibility", {
        OperationKind.OVERRIDE_VISIBILITY.value,
        OperationKind.CONDITIONAL_STATE.value,
        OperationKind.DISTANCE_BASED_VISIBILITY.value,
        OperationKind.AURA_VISIBILITY.value,
    }),
    ("cover", {OperationKind.OVERRIDE_COVER.value, OperationKind.PROVIDE_COVER.value}),
    ("sense", {OperationKind.MODIFY_SENSES.value, OperationKind.MODIFY_DETECTION_MODES.value}),
    ("action qualification", {OperationKind.MODIFY_ACTION_QUALIFICATION.value}),
)


def compatibility_warnings(operations: List[OperationBase], label: str = "effect") -> List[str]:
    """Non-fatal warnings for operation groups merge cannot always reconcile."""
    warnings = []
    types = [op.type for op in operations]
    for group, kinds in _WARNING_GROUPS:
        present = [t for t in types if t in kinds]
        if len(present) > 1:
            warnings.append(f"Multiple {group} operations detected: {', '.join(present)}")
    for warning in warnings:
        logger.warning("Operation compatibility warning for %s: %s", label, warning)
    return warnings
