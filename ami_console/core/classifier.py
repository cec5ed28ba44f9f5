"""
Best-effort call direction classification.

Pure functions over an injectable, immutable rule set. The result is
advisory: it is shown to the operator and never drives control decisions.

Precedence for a single channel:
1. an explicit direction hint (set via a channel variable) always wins
2. the first configured rule that matches
3. the shape of the numbers involved (short extension vs. long external number)
4. unknown
"""

import dataclasses
import re
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional, Pattern, Tuple

from ami_console.core.models import Direction

_HINT_ALIASES = {
    "inbound": Direction.INBOUND,
    "in": Direction.INBOUND,
    "incoming": Direction.INBOUND,
    "outbound": Direction.OUTBOUND,
    "out": Direction.OUTBOUND,
    "outgoing": Direction.OUTBOUND,
    "internal": Direction.INTERNAL,
    "local": Direction.INTERNAL,
}

_RULE_FIELDS = {
    "channel": "name",
    "context": "context",
    "exten": "exten",
    "caller_num": "caller_num",
    "connected_num": "connected_num",
    "technology": "technology",
    "peer": "peer",
}


def parse_direction_hint(value: Optional[str]) -> Optional[Direction]:
    """Map a hint variable's value to a Direction; None if unrecognised."""
    if not value:
        return None
    return _HINT_ALIASES.get(value.strip().lower())


@dataclass(frozen=True)
class DirectionRule:
    field: str
    match: str
    pattern: str
    direction: Direction
    _regex: Optional[Pattern] = dataclasses.field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if self.field not in _RULE_FIELDS:
            raise ValueError(f"Unknown rule field: {self.field}")
        if self.match not in ("equals", "prefix", "regex"):
            raise ValueError(f"Unknown rule match: {self.match}")
        if self.match == "regex":
            object.__setattr__(self, "_regex", re.compile(self.pattern))

    def matches(self, channel) -> bool:
        value = getattr(channel, _RULE_FIELDS[self.field], "") or ""
        if not value:
            return False
        if self.match == "equals":
            return value.lower() == self.pattern.lower()
        if self.match == "prefix":
            return value.startswith(self.pattern)
        return self._regex.search(value) is not None


@dataclass(frozen=True)
class ClassificationRules:
    direction_variable: str = "OPERATOR_DIRECTION"
    rules: Tuple[DirectionRule, ...] = ()
    extension_max_digits: int = 5
    external_min_digits: int = 7

    @classmethod
    def from_config(cls, config) -> "ClassificationRules":
        """Build from a ClassificationConfig."""
        return cls(
            direction_variable=config.direction_variable,
            rules=tuple(
                DirectionRule(r.field, r.match, r.pattern, Direction(r.direction)) for r in config.rules
            ),
            extension_max_digits=config.extension_max_digits,
            external_min_digits=config.external_min_digits,
        )


def _number_kind(number: str, rules: ClassificationRules) -> Optional[str]:
    digits = (number or "").strip()
    if digits.startswith("+"):
        digits = digits[1:]
        if digits.isdigit() and len(digits) >= rules.external_min_digits:
            return "external"
        return None
    if not digits.isdigit():
        return None
    if len(digits) <= rules.extension_max_digits:
        return "extension"
    if len(digits) >= rules.external_min_digits:
        return "external"
    return None


def classify(channel, rules: ClassificationRules) -> Direction:
    """Classify one channel (a Channel or ChannelView)."""
    if channel.direction_hint is not None:
        return channel.direction_hint

    for rule in rules.rules:
        if rule.matches(channel):
            return rule.direction

    source = _number_kind(channel.caller_num, rules)
    target = _number_kind(channel.connected_num, rules) or _number_kind(channel.exten, rules)
    if source == "extension" and target == "external":
        return Direction.OUTBOUND
    if source == "external" and target == "extension":
        return Direction.INBOUND
    if source == "extension" and target == "extension":
        return Direction.INTERNAL
    return Direction.UNKNOWN


def classify_bridge(members: Iterable, rules: ClassificationRules) -> Direction:
    """Plurality vote over the members' known directions; ties are unknown."""
    votes = Counter(classify(m, rules) for m in members)
    votes.pop(Direction.UNKNOWN, None)
    if not votes:
        return Direction.UNKNOWN
    ranked = votes.most_common(2)
    if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
        return Direction.UNKNOWN
    return ranked[0][0]
