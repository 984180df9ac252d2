"""
Predicate Evaluator — boolean expressions over a token's tagged option set.

Behavioral Contract:
- A plain list of terms means AND; {"or": [...]}, {"and": [...]}, {"not": ...}
  and {"nor": [...]} compose explicitly; a "not:" prefix negates one option.
- An empty or absent predicate is vacuously true.
- Evaluating a real predicate against a missing option set is false (fail-closed).
- A pluggable backend (the host's own predicate engine) is preferred when
  present; if it is unavailable or raises, the in-process evaluator decides.
"""

import logging
import re
from typing import Any, Iterable, List, Optional, Protocol, Set

from visioner_kernel.models.base import Predicate
from visioner_kernel.models.scene import ActorState, TokenState
from visioner_kernel.scene.store import are_allies

logger = logging.getLogger(__name__)

_TRAIT_PATTERN = re.compile(r"trait:([^:]+)")


class PredicateBackend(Protocol):
    """Protocol for a host predicate engine."""

    def test(self, predicate: Predicate, options: List[str]) -> bool: ...


def actor_roll_options(actor: Optional[ActorState]) -> List[str]:
    """The actor's full tagged capability set."""
    if actor is None:
        return []
    options = list(actor.roll_options)
    options.append(f"self:type:{actor.type}")
    for trait in actor.traits:
        options.append(f"trait:{trait}")
        options.append(f"self:trait:{trait}")
    for condition in actor.conditions:
        options.append(f"condition:{condition}")
        options.append(f"self:condition:{condition}")
    return list(dict.fromkeys(options))


class PredicateEvaluator:
    """Evaluates predicates and derives option sets for tokens."""

    def __init__(self, backend: Optional[PredicateBackend] = None):
        self.backend = backend

    # --- Evaluation ---

    def evaluate(self, predicate: Optional[Predicate], options: Optional[Iterable[str]]) -> bool:
        if not predicate:
            return True
        if options is None:
            return False

        option_list = list(options)
        if self.backend is not None:
            try:
                return bool(self.backend.test(predicate, option_list))
            except Exception as e:
                logger.warning(
                    "Predicate backend unavailable, using local evaluator: %s", e
                )
        return self._evaluate_statement(predicate, set(option_list))

    def _evaluate_statement(self, statement: Any, options: Set[str]) -> bool:
        if isinstance(statement, list):
            return all(self._evaluate_term(t, options) for t in statement)
        if isinstance(statement, dict):
            if "and" in statement:
                return all(self._evaluate_term(t, options) for t in statement["and"])
            if "or" in statement:
                return any(self._evaluate_term(t, options) for t in statement["or"])
            if "nor" in statement:
                return not any(self._evaluate_term(t, options) for t in statement["nor"])
            if "not" in statement:
                return not self._evaluate_term(statement["not"], options)
            return False
        return self._evaluate_term(statement, options)

    def _evaluate_term(self, term: Any, options: Set[str]) -> bool:
        if isinstance(term, (list, dict)):
            return self._evaluate_statement(term, options)
        if isinstance(term, str):
            if term.startswith("not:"):
                return term[4:] not in options
            return term in options
        return False

    # --- Option sets ---

    def token_options(self, token: Optional[TokenState]) -> List[str]:
        """The token's own options ("self:trait:undead", "condition:invisible", ...)."""
        if token is None or token.actor is None:
            return []
        return actor_roll_options(token.actor)

    def target_options(
        self,
        target: Optional[TokenState],
        observer: Optional[TokenState] = None,
    ) -> List[str]:
        """
        The counterpart's options under a "target:" prefix, so a predicate like
        "target:trait:undead" reads the same from either side of a pair.
        """
        if target is None or target.actor is None:
            return []

        base = actor_roll_options(target.actor)
        options = [f"target:{opt}" for opt in base]
        for opt in base:
            match = _TRAIT_PATTERN.search(opt)
            if match:
                options.append(f"target:trait:{match.group(1)}")

        if observer is not None and observer.actor is not None:
            options.append("target:ally" if are_allies(observer, target) else "target:enemy")

        return list(dict.fromkeys(options))

    def pair_options(self, subject: TokenState, counterpart: TokenState) -> List[str]:
        """Subject's own options plus the counterpart's target-prefixed options."""
        return self.combine(
            self.token_options(subject),
            self.target_options(counterpart, subject),
        )

    @staticmethod
    def combine(*option_sets: Iterable[str]) -> List[str]:
        combined: List[str] = []
        for options in option_sets:
            combined.extend(options)
        return list(dict.fromkeys(combined))
