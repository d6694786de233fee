"""
Semantic change detection for cached events and markets.

A policy is an ordered tuple of FieldRule(name, equals). A record has a
semantic change when any rule reports its field as different. The policy only
decides *whether* to write; the sync service always replaces every cacheable
field once a write is triggered.
"""
import json
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, NamedTuple, Optional, Sequence

from django.conf import settings

from tracker.models import normalize_status

# Probabilities are rounded before comparison (0.97 vs 0.9700001)
OUTCOMES_PRECISION = 2

# Optional adapter fields: None from an adapter means "no information", so it
# neither triggers a change nor clears the stored value. Timestamps are not in
# this set; an absent timestamp is a real value.
NO_INFO_FIELDS = frozenset({'description', 'status', 'volume', 'liquidity', 'outcomes', 'raw'})

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class FieldRule(NamedTuple):
    name: str
    equals: Callable[[Any, Any], bool]


def _to_millis(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // timedelta(milliseconds=1)


def same_instant(a: Optional[datetime], b: Optional[datetime]) -> bool:
    """Equal at millisecond resolution; naive datetimes are taken as UTC"""
    return _to_millis(a) == _to_millis(b)


def same_status(a: Optional[str], b: Optional[str]) -> bool:
    return normalize_status(a) == normalize_status(b)


def same_number(a: Optional[float], b: Optional[float]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return math.isclose(a, b, rel_tol=0, abs_tol=1e-9)


def comparable_outcomes(outcomes) -> str:
    """Key-sorted, rounded JSON form of an outcome distribution"""
    if not isinstance(outcomes, dict):
        return '{}'
    normalized = {}
    for label in sorted(outcomes):
        value = outcomes[label]
        if isinstance(value, (int, float)) and not math.isnan(value):
            normalized[label] = round(value, OUTCOMES_PRECISION)
        else:
            normalized[label] = 0
    return json.dumps(normalized, sort_keys=True)


def same_outcomes(a, b) -> bool:
    return comparable_outcomes(a) == comparable_outcomes(b)


EVENT_CHANGE_POLICY = (
    FieldRule('created_at', same_instant),
    FieldRule('end_date', same_instant),
)

EVENT_FULL_POLICY = EVENT_CHANGE_POLICY + (
    FieldRule('status', same_status),
    FieldRule('volume', same_number),
    FieldRule('liquidity', same_number),
    FieldRule('outcomes', same_outcomes),
)

MARKET_CHANGE_POLICY = (
    FieldRule('status', same_status),
    FieldRule('close_time', same_instant),
    FieldRule('trading_close_time', same_instant),
    FieldRule('volume', same_number),
    FieldRule('liquidity', same_number),
    FieldRule('outcomes', same_outcomes),
)

EVENT_POLICIES = {
    'narrow': EVENT_CHANGE_POLICY,
    'full': EVENT_FULL_POLICY,
}


def event_change_policy() -> Sequence[FieldRule]:
    """Policy selected by TRACKER_EVENT_CHANGE_POLICY ('narrow' unless configured)"""
    name = getattr(settings, 'TRACKER_EVENT_CHANGE_POLICY', 'narrow')
    try:
        return EVENT_POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown event change policy: {name!r}") from None


def _differs(rule: FieldRule, fetched, stored) -> bool:
    new = getattr(fetched, rule.name)
    if rule.name == 'status':
        new = normalize_status(new)
    if new is None and rule.name in NO_INFO_FIELDS:
        return False
    return not rule.equals(new, getattr(stored, rule.name))


def changed_fields(fetched, stored, policy: Sequence[FieldRule] = EVENT_CHANGE_POLICY):
    return [rule.name for rule in policy if _differs(rule, fetched, stored)]


def has_semantic_change(fetched, stored, policy: Sequence[FieldRule] = EVENT_CHANGE_POLICY) -> bool:
    return any(_differs(rule, fetched, stored) for rule in policy)

