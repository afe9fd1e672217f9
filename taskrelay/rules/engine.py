"""
Rule Engine — turns environment observations into trigger events.

Debounce semantics per rule ("enter" edge with cooldown on re-entry):
  - first match ever           → fire, state becomes active
  - match while active         → already inside the matching window, no fire
  - match while inactive       → fire only if cooldown elapsed since last fire
  - no match with prior state  → state becomes inactive

Replacing the rule set discards all match state.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from pydantic import ValidationError

from taskrelay.models.rules import (
    CriteriaType,
    Observation,
    RuleMatchState,
    TriggerRule,
)

logger = logging.getLogger(__name__)


def _matches(rule: TriggerRule, observation: Observation) -> bool:
    criteria = rule.criteria
    if criteria.type == CriteriaType.CATEGORY:
        return observation.category == criteria.value
    if criteria.type == CriteriaType.URL_CONTAINS:
        return criteria.value.lower() in observation.url.lower()
    return False


class RuleEngine:
    """Holds the active rule set and its per-rule debounce state."""

    def __init__(self, cooldown_seconds: float = 30.0):
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self._rules: List[TriggerRule] = []
        self._state: Dict[str, RuleMatchState] = {}

    @property
    def rules(self) -> List[TriggerRule]:
        return list(self._rules)

    def match_state(self, rule_id: str) -> Optional[RuleMatchState]:
        return self._state.get(rule_id)

    def set_rules(self, rules: Iterable) -> List[TriggerRule]:
        """
        Replace the rule set atomically and reset all debounce state.

        Entries may be TriggerRule instances or raw dicts from the wire.
        Malformed entries are dropped; a repeated id keeps its first entry.
        """
        if isinstance(rules, (str, bytes, dict)) or not isinstance(rules, Iterable):
            raise ValueError("rules must be a list")

        accepted: List[TriggerRule] = []
        seen: Set[str] = set()
        for entry in rules:
            try:
                rule = (
                    entry if isinstance(entry, TriggerRule)
                    else TriggerRule.model_validate(entry)
                )
            except ValidationError as e:
                logger.warning("Dropping malformed rule %r: %s", entry, e.errors()[0]["msg"])
                continue
            if rule.id in seen:
                logger.warning("Dropping duplicate rule id %s", rule.id)
                continue
            seen.add(rule.id)
            accepted.append(rule)

        self._rules = accepted
        self._state = {}
        return list(accepted)

    def evaluate(
        self,
        observation: Observation,
        current_time: Optional[datetime] = None,
    ) -> Set[str]:
        """Apply one observation; return the ids of rules that fired."""
        if current_time is None:
            current_time = observation.observed_at or datetime.utcnow()

        fired: Set[str] = set()
        matched: Set[str] = set()

        for rule in self._rules:
            if not _matches(rule, observation):
                continue
            matched.add(rule.id)
            state = self._state.get(rule.id)

            if state is None:
                self._state[rule.id] = RuleMatchState(
                    active=True, last_triggered_at=current_time
                )
                fired.add(rule.id)
            elif state.active:
                continue
            elif current_time - state.last_triggered_at >= self.cooldown:
                state.active = True
                state.last_triggered_at = current_time
                fired.add(rule.id)
            else:
                logger.debug("Rule %s within cooldown, suppressed", rule.id)

        for rule_id, state in self._state.items():
            if rule_id not in matched and state.active:
                state.active = False
                logger.debug("Rule %s no longer matching, marked inactive", rule_id)

        return fired
