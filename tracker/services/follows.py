"""
Per-user state that references the synced catalog: follows, attention levels
and No-probability evaluations.

Rows cascade from Event/Market, so removing catalog items (only ever through
Site or Section deletion) removes the derived rows in the same transaction.
"""
import logging
from typing import Dict, List, Optional

from django.contrib.auth import get_user_model
from django.core.exceptions import PermissionDenied
from django.db import transaction
from django.db.models import Max

from tracker.exceptions import CapacityExceeded, InvalidValue, NotFound
from tracker.models import (
    DEFAULT_ATTENTION_LEVEL,
    DEFAULT_NO_EVALUATION_THRESHOLD,
    Event,
    Market,
    MarketNoEvaluation,
    UserFollowedEvent,
    UserFollowedMarket,
)

logger = logging.getLogger(__name__)

MAX_FOLLOWED_EVENTS = 50
MAX_FOLLOWED_MARKETS = 50

# At most this many attention updates per batch request
MAX_ATTENTION_UPDATES = 50


def _check_owner(user, item) -> None:
    if item.site.user_id != user.id:
        raise PermissionDenied("Item belongs to another user's site")


def _lock_user(user) -> None:
    """Serialize capacity checks for one user until the transaction ends"""
    get_user_model().objects.select_for_update().filter(pk=user.pk).exists()


def validate_attention_level(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidValue("attention_level must be a non-negative integer")
    return value


def validate_probability(value, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
        raise InvalidValue(f"{name} must be a number between 0 and 1")
    if not 0 <= value <= 1:
        raise InvalidValue(f"{name} must be a number between 0 and 1")
    return float(value)


def threshold_from_percent(value) -> float:
    """User-facing thresholds are whole percents (10 -> 0.10)"""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 100:
        raise InvalidValue("threshold percent must be a number between 0 and 100")
    return value / 100


# Reads

def followed_event_ids(user) -> List[int]:
    return list(
        UserFollowedEvent.objects.filter(user=user).values_list('event_id', flat=True)
    )


def followed_market_ids(user) -> List[int]:
    return list(
        UserFollowedMarket.objects.filter(user=user).values_list('market_id', flat=True)
    )


def event_attention_map(user) -> Dict[int, int]:
    rows = UserFollowedEvent.objects.filter(user=user).values_list('event_id', 'attention_level')
    return dict(rows)


def market_attention_map(user) -> Dict[int, int]:
    """Attention level per followed market; markets not in the map are not followed"""
    rows = UserFollowedMarket.objects.filter(user=user).values_list('market_id', 'attention_level')
    return dict(rows)


def no_evaluations(user) -> Dict[int, MarketNoEvaluation]:
    return {e.market_id: e for e in MarketNoEvaluation.objects.filter(user=user)}


def is_flagged(evaluation: MarketNoEvaluation) -> bool:
    return evaluation.no_probability >= evaluation.threshold


def flagged_market_ids(user) -> List[int]:
    return sorted(
        market_id for market_id, evaluation in no_evaluations(user).items()
        if is_flagged(evaluation)
    )


def _followed_rows(model, user, min_attention: int = 1, unfollowed: bool = False, top: bool = False):
    """Follow rows filtered by attention: level 0 rows are 'unfollowed', top is the user's highest level"""
    rows = model.objects.filter(user=user)
    if unfollowed:
        return rows.filter(attention_level=0)
    if top:
        top_level = rows.aggregate(top=Max('attention_level'))['top'] or 0
        return rows.filter(attention_level=top_level)
    return rows.filter(attention_level__gte=validate_attention_level(min_attention))


def followed_events(user, min_attention: int = 1, unfollowed: bool = False,
                    top: bool = False) -> List[UserFollowedEvent]:
    """Followed events that are still active, soonest created_at first"""
    rows = _followed_rows(UserFollowedEvent, user, min_attention, unfollowed, top)
    rows = [r for r in rows.select_related('event__site', 'event__section') if r.event.is_active]
    rows.sort(key=lambda r: (r.event.created_at is None, r.event.created_at or 0))
    return rows


def followed_markets(user, min_attention: int = 1, unfollowed: bool = False,
                     top: bool = False) -> List[UserFollowedMarket]:
    rows = _followed_rows(UserFollowedMarket, user, min_attention, unfollowed, top)
    rows = [
        r for r in rows.select_related('market__site', 'market__section', 'market__event')
        if r.market.status is None or r.market.is_active
    ]

    def deadline(row):
        value = row.market.trading_close_time or row.market.close_time
        return (value is None, value or 0)

    rows.sort(key=deadline)
    return rows


# Writes

def _follow(model, user, field: str, item, limit: int, kind: str,
            attention_level: Optional[int] = None):
    with transaction.atomic():
        _lock_user(user)
        existing = model.objects.filter(user=user, **{field: item}).first()
        if existing is not None:
            if attention_level is not None and existing.attention_level != attention_level:
                existing.attention_level = attention_level
                existing.save(update_fields=['attention_level'])
            return existing

        if model.objects.filter(user=user).count() >= limit:
            raise CapacityExceeded(kind, limit)

        return model.objects.create(
            user=user,
            attention_level=DEFAULT_ATTENTION_LEVEL if attention_level is None else attention_level,
            **{field: item}
        )


def follow_event(user, event, attention_level: Optional[int] = None) -> UserFollowedEvent:
    """Follow an event; following an already followed event is a no-op"""
    _check_owner(user, event)
    if attention_level is not None:
        validate_attention_level(attention_level)
    return _follow(UserFollowedEvent, user, 'event', event, MAX_FOLLOWED_EVENTS, 'events', attention_level)


def follow_market(user, market, attention_level: Optional[int] = None) -> UserFollowedMarket:
    _check_owner(user, market)
    if attention_level is not None:
        validate_attention_level(attention_level)
    return _follow(UserFollowedMarket, user, 'market', market, MAX_FOLLOWED_MARKETS, 'markets', attention_level)


def unfollow_event(user, event_id) -> int:
    deleted, _ = UserFollowedEvent.objects.filter(user=user, event_id=event_id).delete()
    return deleted


def unfollow_market(user, market_id) -> int:
    deleted, _ = UserFollowedMarket.objects.filter(user=user, market_id=market_id).delete()
    return deleted


def set_event_attention(user, event, attention_level) -> UserFollowedEvent:
    """Upsert the attention level; creates the follow if needed (capacity applies)"""
    return follow_event(user, event, validate_attention_level(attention_level))


def set_market_attention(user, market, attention_level) -> UserFollowedMarket:
    return follow_market(user, market, validate_attention_level(attention_level))


def _parse_attention_updates(updates, id_field: str) -> Dict[int, int]:
    if not isinstance(updates, list):
        raise InvalidValue("updates must be a list")
    if len(updates) > MAX_ATTENTION_UPDATES:
        raise InvalidValue(f"At most {MAX_ATTENTION_UPDATES} updates per request")

    levels = {}
    for update in updates:
        item_id = update.get(id_field) if isinstance(update, dict) else None
        if isinstance(item_id, bool) or not isinstance(item_id, int):
            raise InvalidValue(
                f"Each update must have {id_field} (integer) and attention_level (non-negative integer)"
            )
        levels[item_id] = validate_attention_level(update.get('attention_level'))
    return levels


def _set_attention_batch(model, item_model, user, field: str, updates, limit: int, kind: str) -> int:
    """
    Validate every update, then apply them all in one transaction.

    Unknown ids raise NotFound and foreign ids PermissionDenied before
    anything is written; new follows still count against the capacity.
    """
    levels = _parse_attention_updates(updates, f"{field}_id")
    items = item_model.objects.select_related('site').in_bulk(list(levels))

    missing = sorted(set(levels) - set(items))
    if missing:
        raise NotFound(item_model.__name__, missing)
    forbidden = sorted(i for i, item in items.items() if item.site.user_id != user.id)
    if forbidden:
        raise PermissionDenied(f"{kind} {forbidden} belong to another user's site")

    with transaction.atomic():
        _lock_user(user)
        followed = set(
            model.objects.filter(user=user, **{f"{field}__in": list(levels)})
            .values_list(f"{field}_id", flat=True)
        )
        new_count = len(set(levels) - followed)
        if new_count and model.objects.filter(user=user).count() + new_count > limit:
            raise CapacityExceeded(kind, limit)

        for item_id, level in levels.items():
            model.objects.update_or_create(
                user=user,
                **{field: items[item_id]},
                defaults={'attention_level': level}
            )

    logger.info(f"Set attention for {len(levels)} {kind} of user {user.id}")
    return len(levels)


def set_event_attention_batch(user, updates) -> int:
    """updates: [{'event_id': int, 'attention_level': int}, ...]; returns the number applied"""
    return _set_attention_batch(
        UserFollowedEvent, Event, user, 'event', updates, MAX_FOLLOWED_EVENTS, 'events'
    )


def set_market_attention_batch(user, updates) -> int:
    return _set_attention_batch(
        UserFollowedMarket, Market, user, 'market', updates, MAX_FOLLOWED_MARKETS, 'markets'
    )


def upsert_no_evaluation(user, market, no_probability, threshold=None) -> MarketNoEvaluation:
    """Store the user's No probability for a market. threshold is a fraction, default 0.10."""
    _check_owner(user, market)
    no_probability = validate_probability(no_probability, 'no_probability')
    if threshold is None:
        threshold = DEFAULT_NO_EVALUATION_THRESHOLD
    threshold = validate_probability(threshold, 'threshold')

    evaluation, _ = MarketNoEvaluation.objects.update_or_create(
        user=user,
        market=market,
        defaults={'no_probability': no_probability, 'threshold': threshold}
    )
    return evaluation


def delete_site(site) -> None:
    """Delete a site with its catalog and every follow/evaluation row referencing it"""
    with transaction.atomic():
        deleted, per_model = site.delete()
    logger.info(f"Deleted site {site.name}: {deleted} rows ({per_model})")
