"""
Source Ledger — per-token record of why a token is in a visibility or cover state.

Updated by: Operation handlers
Queried by: Qualification Engine, Rule Element Checker, the API

Behavioral Contract:
- Within one (token, state type, observer) bucket, source ids are unique;
  adding an existing id replaces it in place
- The ledger is stored inside the token's flags under "stateSource" and is
  always written with a full replace, in the same commit as any companion flags
- Removal without a state type or observer sweeps every bucket and prunes
  buckets left empty
- Identical rewrites of a source within the dedup window are skipped
"""

import json
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from visioner_kernel.models.source import Source
from visioner_kernel.models.states import StateType, enum_value
from visioner_kernel.scene.store import FlagStore, SceneStore

logger = logging.getLogger(__name__)

LEDGER_FLAG = "stateSource"

_BUCKET_KEYS: Dict[str, Tuple[str, str]] = {
    StateType.VISIBILITY.value: ("visibility", "visibilityByObserver"),
    StateType.COVER.value: ("cover", "coverByObserver"),
}


def source_qualifies(source: Source, action: str, state_type: str) -> bool:
    """A source qualifies for an action unless it explicitly says it cannot."""
    qualification = source.qualifications.get(action)
    if qualification is None:
        return True
    if state_type == StateType.COVER:
        return qualification.can_use_this_cover is not False
    return qualification.can_use_this_concealment is not False


class DedupGuard:
    """
    Bounded TTL cache of recent source writes, keyed by bucket and source id.
    A write is a duplicate when the same payload was written to the same
    bucket within the window.
    """

    def __init__(
        self,
        window_seconds: float = 1.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Tuple, Tuple[str, float]]" = OrderedDict()

    def is_duplicate(self, key: Tuple, fingerprint: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        seen, at = entry
        if self._clock() - at >= self.window_seconds:
            del self._entries[key]
            return False
        return seen == fingerprint

    def record(self, key: Tuple, fingerprint: str) -> None:
        self._entries[key] = (fingerprint, self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def forget(self, token_id: str, source_id: Optional[str] = None) -> None:
        stale = [
            key for key in self._entries
            if key[0] == token_id and (source_id is None or key[3] == source_id)
        ]
        for key in stale:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class SourceLedger:
    """
    Stores and queries Sources. Token arguments are token ids; an id the
    scene does not know is a silent no-op for writes.
    """

    def __init__(
        self,
        flags: FlagStore,
        scene: Optional[SceneStore] = None,
        dedup: Optional[DedupGuard] = None,
    ):
        self.flags = flags
        self.scene = scene
        self.dedup = dedup or DedupGuard()

    # --- Storage ---

    def _load(self, token_id: str) -> Dict[str, Any]:
        return self.flags.get_flag(token_id, LEDGER_FLAG, {}) or {}

    def _save(self, token_id: str, ledger: Dict[str, Any], extra_flags: Optional[Dict[str, Any]] = None) -> None:
        changes: Dict[str, Any] = {LEDGER_FLAG: ledger or None}
        if extra_flags:
            changes.update(extra_flags)
        self.flags.update(token_id, changes)

    def _known(self, token_id: str) -> bool:
        return self.scene is None or self.scene.get_token(token_id) is not None

    @staticmethod
    def _bucket(ledger: Dict[str, Any], state_type: str, observer_id: Optional[str]) -> Optional[Dict[str, Any]]:
        global_key, observer_key = _BUCKET_KEYS[state_type]
        if observer_id is None:
            return ledger.get(global_key)
        return ledger.get(observer_key, {}).get(observer_id)

    # --- Writes ---

    def add_source(
        self,
        token_id: str,
        state_type: str,
        source: Source,
        observer_id: Optional[str] = None,
        extra_flags: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Upsert a source by id into the addressed bucket. The bucket's state
        becomes that of its highest-priority source. Returns False when the
        write was skipped (unknown token or duplicate within the window).
        """
        if not self._known(token_id):
            return False

        payload = source.to_wire()
        fingerprint = json.dumps(payload, sort_keys=True)
        state_type = enum_value(state_type)
        key = (token_id, state_type, observer_id, source.id)

        ledger = self._load(token_id)
        global_key, observer_key = _BUCKET_KEYS[state_type]
        if observer_id is None:
            bucket = ledger.setdefault(global_key, {"sources": []})
        else:
            bucket = ledger.setdefault(observer_key, {}).setdefault(observer_id, {"sources": []})

        existing = bucket.setdefault("sources", [])
        already_stored = any(s.get("id") == source.id and s == payload for s in existing)
        if already_stored and self.dedup.is_duplicate(key, fingerprint) and not extra_flags:
            logger.debug("Skipping duplicate source %s on %s", source.id, token_id)
            return False

        for i, stored in enumerate(existing):
            if stored.get("id") == source.id:
                existing[i] = payload
                break
        else:
            existing.append(payload)

        winner = self.get_highest_priority_source([Source.model_validate(s) for s in existing])
        bucket["state"] = winner.state if winner else None

        self._save(token_id, ledger, extra_flags)
        self.dedup.record(key, fingerprint)
        return True

    def remove_source(
        self,
        token_id: str,
        source_id: str,
        state_type: Optional[str] = None,
        observer_id: Optional[str] = None,
        extra_flags: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Remove a source by exact id. With neither state_type nor observer_id,
        every bucket is swept. Returns how many entries were removed.
        """
        return self._remove_where(
            token_id,
            lambda s: s.get("id") == source_id,
            state_type=state_type,
            observer_id=observer_id,
            sweep=state_type is None and observer_id is None,
            extra_flags=extra_flags,
            forget_id=source_id,
        )

    def clear_all_sources(self, token_id: str) -> None:
        if self.flags.get_flag(token_id, LEDGER_FLAG) is not None:
            self.flags.unset_flag(token_id, LEDGER_FLAG)
        self.dedup.forget(token_id)

    def remove_rule_element_sources(
        self,
        rule_element_id: str,
        token_ids: Optional[Iterable[str]] = None,
    ) -> List[str]:
        """Sweep every ledger for sources tagged with a rule element. Returns touched token ids."""
        candidates = list(token_ids) if token_ids is not None else self.flags.tokens_with_flag(LEDGER_FLAG)
        touched = []
        for token_id in candidates:
            removed = self._remove_where(
                token_id,
                lambda s: s.get("ruleElementId") == rule_element_id,
                sweep=True,
            )
            if removed:
                touched.append(token_id)
        if touched:
            logger.info(
                "Removed ledger sources of rule element %s from %d token(s)",
                rule_element_id, len(touched),
            )
        return touched

    def _remove_where(
        self,
        token_id: str,
        match: Callable[[Dict[str, Any]], bool],
        state_type: Optional[str] = None,
        observer_id: Optional[str] = None,
        sweep: bool = False,
        extra_flags: Optional[Dict[str, Any]] = None,
        forget_id: Optional[str] = None,
    ) -> int:
        ledger = self._load(token_id)
        if not ledger:
            if extra_flags:
                self.flags.update(token_id, extra_flags)
            return 0

        removed = 0
        types = [state_type] if state_type is not None else list(_BUCKET_KEYS)
        for stype in types:
            global_key, observer_key = _BUCKET_KEYS[stype]
            if sweep or observer_id is None:
                if global_key in ledger:
                    removed += self._strip(ledger, global_key, match)
            if sweep or observer_id is not None:
                by_observer = ledger.get(observer_key, {})
                observers = list(by_observer) if sweep else [observer_id]
                for obs in observers:
                    if obs in by_observer:
                        removed += self._strip(by_observer, obs, match)
                if observer_key in ledger and not by_observer:
                    del ledger[observer_key]

        if removed or extra_flags:
            self._save(token_id, ledger, extra_flags)
        if removed:
            self.dedup.forget(token_id, forget_id)
        return removed

    def _strip(self, container: Dict[str, Any], key: str, match: Callable[[Dict[str, Any]], bool]) -> int:
        bucket = container[key]
        sources = bucket.get("sources", [])
        kept = [s for s in sources if not match(s)]
        removed = len(sources) - len(kept)
        if not kept:
            del container[key]
        elif removed:
            bucket["sources"] = kept
            winner = self.get_highest_priority_source([Source.model_validate(s) for s in kept])
            bucket["state"] = winner.state if winner else None
        return removed

    # --- Reads ---

    def get_sources(self, token_id: str, state_type: str, observer_id: Optional[str] = None) -> List[Source]:
        bucket = self._bucket(self._load(token_id), state_type, observer_id)
        if not bucket:
            return []
        return [Source.model_validate(s) for s in bucket.get("sources", [])]

    def get_bucket_state(self, token_id: str, state_type: str, observer_id: Optional[str] = None) -> Optional[str]:
        bucket = self._bucket(self._load(token_id), state_type, observer_id)
        return bucket.get("state") if bucket else None

    def get_observer_ids(self, token_id: str, state_type: str) -> List[str]:
        _, observer_key = _BUCKET_KEYS[state_type]
        return list(self._load(token_id).get(observer_key, {}).keys())

    def get_all_sources(self, token_id: str, state_type: Optional[str] = None) -> List[Source]:
        """Every source on a token across global and per-observer buckets, unique by id."""
        ledger = self._load(token_id)
        seen = set()
        result = []
        types = [state_type] if state_type is not None else list(_BUCKET_KEYS)
        for stype in types:
            global_key, observer_key = _BUCKET_KEYS[stype]
            buckets = [ledger.get(global_key)] + list(ledger.get(observer_key, {}).values())
            for bucket in buckets:
                for raw in (bucket or {}).get("sources", []):
                    if raw.get("id") in seen:
                        continue
                    seen.add(raw.get("id"))
                    result.append(Source.model_validate(raw))
        return result

    def get_qualifying_sources(
        self,
        token_id: str,
        action: str,
        state_type: str,
        observer_id: Optional[str] = None,
    ) -> List[Source]:
        return [
            s for s in self.get_sources(token_id, state_type, observer_id)
            if source_qualifies(s, action, state_type)
        ]

    # --- Aggregation helpers ---

    @staticmethod
    def get_highest_priority_source(sources: List[Source]) -> Optional[Source]:
        """Strictly greater priority wins; on ties the earlier source is kept."""
        best: Optional[Source] = None
        for source in sources:
            if best is None or source.priority > best.priority:
                best = source
        return best

    def get_effective_state(self, sources: List[Source]) -> Optional[str]:
        winner = self.get_highest_priority_source(sources)
        return winner.state if winner else None

    @staticmethod
    def has_disqualifying_source(
        sources: List[Source],
        action: str,
        state_type: str = StateType.VISIBILITY.value,
    ) -> bool:
        return any(not source_qualifies(s, action, state_type) for s in sources)

    @staticmethod
    def get_custom_messages(sources: List[Source], action: str) -> List[str]:
        messages = []
        for source in sources:
            qualification = source.qualifications.get(action)
            if qualification is not None and qualification.custom_message:
                messages.append(qualification.custom_message)
        return messages
