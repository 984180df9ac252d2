"""
Scene stores — the host-facing state this kernel reads and writes.

Updated by: Operation handlers (flags, perception maps) + the API (tokens)
Queried by: Source Ledger, Qualification Engine, Rule Element Checker

Every store is in-memory. A host integration would back FlagStore with
document flags and PerceptionMapStore with its own visibility/cover maps.
"""

import copy
import logging
import math
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from visioner_kernel.models.scene import DetectionMode, Sense, TokenState
from visioner_kernel.models.states import CoverState, TokenSelector, VisibilityState, enum_value

logger = logging.getLogger(__name__)


class FlagWriteError(Exception):
    """Raised when a flag write cannot be persisted."""
    pass


def _split(path: str) -> List[str]:
    if not path:
        raise ValueError("Flag path must not be empty")
    return path.split(".")


def _deep_merge(target: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def _lookup(flags: Dict[str, Any], parts: List[str]) -> Any:
    node: Any = flags
    for part in parts:
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _parent(flags: Dict[str, Any], parts: List[str], create: bool) -> Optional[Dict[str, Any]]:
    node = flags
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            if not create:
                return None
            child = {}
            node[part] = child
        node = child
    return node


def _prune(flags: Dict[str, Any], parts: List[str]) -> None:
    """Drop containers left empty along a path after an unset."""
    for depth in range(len(parts) - 1, 0, -1):
        container = _lookup(flags, parts[:depth])
        if isinstance(container, dict) and not container:
            parent = _lookup(flags, parts[:depth - 1]) if depth > 1 else flags
            del parent[parts[depth - 1]]
        else:
            break


class FlagStore:
    """
    Token-scoped, namespaced key-value storage with dotted key paths.

    set_flag deep-merges dictionaries; replace_flag overwrites the value at a
    path wholesale. Reads return copies, so callers never mutate stored state
    in place. Every write funnels through _commit, which a persistent backend
    overrides (and which may raise FlagWriteError).
    """

    def __init__(self, namespace: str = "pf2e-visioner"):
        self.namespace = namespace
        self._flags: Dict[str, Dict[str, Any]] = {}

    def get_flag(self, token_id: str, path: str, default: Any = None) -> Any:
        value = _lookup(self._flags.get(token_id, {}), _split(path))
        if value is None:
            return default
        return copy.deepcopy(value)

    def get_all(self, token_id: str) -> Dict[str, Any]:
        return copy.deepcopy(self._flags.get(token_id, {}))

    def set_flag(self, token_id: str, path: str, value: Any) -> None:
        flags = self.get_all(token_id)
        parts = _split(path)
        parent = _parent(flags, parts, create=True)
        existing = parent.get(parts[-1])
        if isinstance(value, dict) and isinstance(existing, dict):
            _deep_merge(existing, value)
        else:
            parent[parts[-1]] = copy.deepcopy(value)
        self._commit(token_id, flags)

    def replace_flag(self, token_id: str, path: str, value: Any) -> None:
        self.update(token_id, {path: value})

    def unset_flag(self, token_id: str, path: str) -> bool:
        if _lookup(self._flags.get(token_id, {}), _split(path)) is None:
            return False
        self.update(token_id, {path: None})
        return True

    def update(self, token_id: str, changes: Dict[str, Any]) -> None:
        """
        Apply a batch of replacements in one commit. A value of None unsets
        its path. Either every change lands or none does.
        """
        flags = self.get_all(token_id)
        for path, value in changes.items():
            parts = _split(path)
            if value is None:
                parent = _parent(flags, parts, create=False)
                if parent is not None and parts[-1] in parent:
                    del parent[parts[-1]]
                    _prune(flags, parts)
            else:
                parent = _parent(flags, parts, create=True)
                parent[parts[-1]] = copy.deepcopy(value)
        self._commit(token_id, flags)

    def tokens_with_flag(self, path: str) -> List[str]:
        parts = _split(path)
        return [
            token_id for token_id, flags in self._flags.items()
            if _lookup(flags, parts) is not None
        ]

    def token_ids(self) -> List[str]:
        return list(self._flags.keys())

    def clear(self, token_id: str) -> None:
        self._commit(token_id, {})

    def _commit(self, token_id: str, flags: Dict[str, Any]) -> None:
        if flags:
            self._flags[token_id] = flags
        else:
            self._flags.pop(token_id, None)


def euclidean_distance(a: TokenState, b: TokenState) -> float:
    """Straight-line distance in feet, elevation included."""
    return math.dist((a.x, a.y, a.elevation), (b.x, b.y, b.elevation))


def is_player_character(token: TokenState) -> bool:
    if token.actor is None:
        return False
    return token.actor.has_player_owner or token.actor.type == "character"


def are_allies(a: TokenState, b: TokenState) -> bool:
    """PCs are allied with PCs; NPCs with NPCs of the same disposition."""
    a_pc = is_player_character(a)
    b_pc = is_player_character(b)
    if a_pc and b_pc:
        return True
    if not a_pc and not b_pc:
        return a.disposition == b.disposition
    return False


class SceneStore:
    """Tokens on the active scene, plus the selection and targeting sets."""

    def __init__(self, distance_fn: Callable[[TokenState, TokenState], float] = euclidean_distance):
        self._tokens: Dict[str, TokenState] = {}
        self._controlled: Set[str] = set()
        self._targeted: Set[str] = set()
        self._distance_fn = distance_fn

    def upsert_token(self, token: TokenState) -> None:
        self._tokens[token.id] = token

    def get_token(self, token_id: str) -> Optional[TokenState]:
        return self._tokens.get(token_id)

    def remove_token(self, token_id: str) -> bool:
        self._controlled.discard(token_id)
        self._targeted.discard(token_id)
        return self._tokens.pop(token_id, None) is not None

    def all_tokens(self) -> List[TokenState]:
        return list(self._tokens.values())

    def other_tokens(self, token_id: str) -> List[TokenState]:
        return [t for t in self._tokens.values() if t.id != token_id]

    def set_controlled(self, token_ids: Iterable[str]) -> None:
        self._controlled = set(token_ids)

    def set_targeted(self, token_ids: Iterable[str]) -> None:
        self._targeted = set(token_ids)

    @property
    def controlled_ids(self) -> Set[str]:
        return set(self._controlled)

    @property
    def targeted_ids(self) -> Set[str]:
        return set(self._targeted)

    def distance(self, a: TokenState, b: TokenState) -> float:
        return self._distance_fn(a, b)

    def update_senses(self, token_id: str, senses: List[Sense]) -> None:
        token = self._tokens.get(token_id)
        if token is None or token.actor is None:
            return
        actor = token.actor.model_copy(update={"senses": list(senses)})
        self._tokens[token_id] = token.model_copy(update={"actor": actor})

    def update_detection_modes(self, token_id: str, modes: List[DetectionMode]) -> None:
        token = self._tokens.get(token_id)
        if token is None:
            return
        self._tokens[token_id] = token.model_copy(update={"detection_modes": list(modes)})

    def selector_matches(
        self,
        subject: TokenState,
        candidate: TokenState,
        selector: str,
        token_ids: Optional[List[str]] = None,
        max_range: Optional[float] = None,
    ) -> bool:
        """Whether one counterpart token falls under a selector relative to the subject."""
        if candidate.id == subject.id:
            return False
        if selector == TokenSelector.ALLIES and not are_allies(subject, candidate):
            return False
        if selector == TokenSelector.ENEMIES and are_allies(subject, candidate):
            return False
        if selector == TokenSelector.SELECTED and candidate.id not in self._controlled:
            return False
        if selector == TokenSelector.TARGETED and candidate.id not in self._targeted:
            return False
        if selector == TokenSelector.SPECIFIC and candidate.id not in (token_ids or []):
            return False
        if max_range is not None and self.distance(subject, candidate) > max_range:
            return False
        return True

    def resolve_selector(
        self,
        subject: TokenState,
        selector: str,
        token_ids: Optional[List[str]] = None,
        max_range: Optional[float] = None,
    ) -> List[TokenState]:
        """
        Candidate counterpart tokens for a selector, excluding the subject,
        optionally limited to those within max_range feet.
        """
        return [
            t for t in self.other_tokens(subject.id)
            if self.selector_matches(subject, t, selector, token_ids, max_range)
        ]


class PerceptionMapStore:
    """
    Ordered-pair visibility and cover maps. Visibility is keyed
    (observer, target); cover is keyed (attacker, defender). Neither map is
    symmetric.
    """

    def __init__(self):
        self._visibility: Dict[str, Dict[str, str]] = {}
        self._cover: Dict[str, Dict[str, str]] = {}

    def get_visibility_between(self, observer_id: str, target_id: str) -> str:
        return self._visibility.get(observer_id, {}).get(target_id, VisibilityState.OBSERVED.value)

    def set_visibility_between(self, observer_id: str, target_id: str, state: str) -> None:
        logger.debug("visibility %s -> %s = %s", observer_id, target_id, state)
        self._visibility.setdefault(observer_id, {})[target_id] = enum_value(state)

    def get_cover_between(self, attacker_id: str, defender_id: str) -> str:
        return self._cover.get(attacker_id, {}).get(defender_id, CoverState.NONE.value)

    def set_cover_between(self, attacker_id: str, defender_id: str, state: str) -> None:
        logger.debug("cover %s -> %s = %s", attacker_id, defender_id, state)
        self._cover.setdefault(attacker_id, {})[defender_id] = enum_value(state)

    def visibility_map(self, observer_id: str) -> Dict[str, str]:
        return dict(self._visibility.get(observer_id, {}))

    def cover_map(self, attacker_id: str) -> Dict[str, str]:
        return dict(self._cover.get(attacker_id, {}))
