"""
Pairwise state overrides — shared by visibility and cover overrides.

For each eligible (subject, candidate) pair a Source is written into the
ledger bucket of the token being perceived (or attacked), keyed by the
perceiving (or attacking) token, and the live ordered-pair map is updated
to the bucket's winning state.

    direction "to":   candidate -> subject; source on subject, bucket = candidate
    direction "from": subject -> candidate; source on candidate, bucket = subject

The map state each pair had before the first override is kept in the
subject's ruleElementOverride.{source} flag and restored on removal when no
other source remains.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from visioner_kernel.models.operation import OperationBase
from visioner_kernel.models.scene import TokenState
from visioner_kernel.models.source import ActionQualification, Source
from visioner_kernel.models.states import Direction
from visioner_kernel.operations.base import (
    ApplyContext,
    OperationConfigError,
    OperationHandler,
    flag_key,
)

logger = logging.getLogger(__name__)

OVERRIDE_FLAG = "ruleElementOverride"


def orient(direction: str, subject_id: str, candidate_id: str) -> Tuple[str, str, str, str]:
    """(ledger holder, bucket observer, map from, map to) for one pair."""
    if direction == Direction.FROM:
        return candidate_id, subject_id, subject_id, candidate_id
    return subject_id, candidate_id, candidate_id, subject_id


class PairOverrideHandler(OperationHandler):
    """Writes one Source per eligible pair and keeps the live map in step."""

    state_type: str
    default_state: str

    def _get_map(self, from_id: str, to_id: str) -> str:
        raise NotImplementedError

    def _set_map(self, from_id: str, to_id: str, state: str) -> None:
        raise NotImplementedError

    def _record_path(self, source_id: str) -> str:
        return f"{OVERRIDE_FLAG}.{flag_key(source_id)}"

    def apply_pairs(
        self,
        operation: OperationBase,
        subject: TokenState,
        ctx: ApplyContext,
        state: Optional[str],
        direction: str,
        selector: str,
        token_ids: List[str],
        max_range: Optional[float],
        qualifications: Optional[Dict[str, ActionQualification]] = None,
        prevent_auto_cover: bool = False,
        **record_extra: Any,
    ) -> List[str]:
        if state is None:
            raise OperationConfigError(f"{operation.type} requires a state")

        services = self.services
        source_id = self.source_id(operation, subject, ctx)
        priority = self.priority(operation)
        record_path = self._record_path(source_id)
        record = services.flags.get_flag(subject.id, record_path, {}) or {}
        previous: Dict[str, str] = dict(record.get("previousStates", {}))

        source = Source(
            id=source_id,
            type=operation.type,
            priority=priority,
            state=state,
            direction=direction,
            qualifications=qualifications or {},
            predicate=operation.predicate,
            prevent_auto_cover=prevent_auto_cover,
            rule_element_id=ctx.rule_element_id,
        )

        affected: List[str] = []
        candidates = services.scene.resolve_selector(subject, selector, token_ids, max_range)
        for candidate in candidates:
            if not self.pair_passes(operation, subject, candidate):
                continue
            holder, observer, map_from, map_to = orient(direction, subject.id, candidate.id)
            pair_key = f"{map_from}>{map_to}"
            if pair_key not in previous:
                previous[pair_key] = self._get_map(map_from, map_to)

            services.ledger.add_source(holder, self.state_type, source, observer_id=observer)
            effective = services.ledger.get_bucket_state(holder, self.state_type, observer) or state
            self._set_map(map_from, map_to, effective)
            affected.append(candidate.id)
            ctx.touch(subject.id, candidate.id)

        # Pairs covered by an earlier apply but no longer eligible
        stale_direction = record.get("direction", direction)
        for candidate_id in record.get("affectedTokenIds", []):
            if candidate_id not in affected:
                self._release(subject.id, candidate_id, stale_direction, source_id, previous, ctx)

        kept_previous = {}
        for candidate_id in affected:
            _, _, map_from, map_to = orient(direction, subject.id, candidate_id)
            pair_key = f"{map_from}>{map_to}"
            kept_previous[pair_key] = previous[pair_key]

        new_record = {
            "id": source_id,
            "type": operation.type,
            "stateType": self.state_type,
            "state": state,
            "direction": direction,
            "priority": priority,
            "affectedTokenIds": affected,
            "previousStates": kept_previous,
        }
        if ctx.rule_element_id:
            new_record["ruleElementId"] = ctx.rule_element_id
        new_record.update({k: v for k, v in record_extra.items() if v is not None})
        services.flags.replace_flag(subject.id, record_path, new_record)
        ctx.own_flag(subject.id, record_path)

        logger.debug(
            "%s %s applied %s to %d pair(s)", operation.type, source_id, state, len(affected)
        )
        return affected

    def remove_pairs(self, operation: OperationBase, subject: TokenState, ctx: ApplyContext) -> None:
        services = self.services
        source_id = self.source_id(operation, subject, ctx)
        record_path = self._record_path(source_id)
        record = services.flags.get_flag(subject.id, record_path)

        if record is None:
            # Apply never recorded its pairs; sweep every ledger for the id
            for token in services.scene.all_tokens():
                if services.ledger.remove_source(token.id, source_id):
                    ctx.touch(token.id)
            ctx.touch(subject.id)
            return

        previous = record.get("previousStates", {})
        direction = record.get("direction", Direction.TO.value)
        for candidate_id in record.get("affectedTokenIds", []):
            self._release(subject.id, candidate_id, direction, source_id, previous, ctx)

        services.flags.unset_flag(subject.id, record_path)
        ctx.touch(subject.id)

    def _release(
        self,
        subject_id: str,
        candidate_id: str,
        direction: str,
        source_id: str,
        previous: Dict[str, str],
        ctx: ApplyContext,
    ) -> None:
        ledger = self.services.ledger
        holder, observer, map_from, map_to = orient(direction, subject_id, candidate_id)
        ledger.remove_source(holder, source_id, self.state_type, observer)

        remaining = ledger.get_bucket_state(holder, self.state_type, observer)
        if remaining is not None:
            self._set_map(map_from, map_to, remaining)
        else:
            self._set_map(map_from, map_to, previous.get(f"{map_from}>{map_to}", self.default_state))
        ctx.touch(subject_id, candidate_id)
