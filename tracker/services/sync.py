import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from tracker.api import SiteInput, get_adapter
from tracker.exceptions import AdapterError, AdapterUnreachable, CapacityExceeded, UnknownAdapter
from tracker.models import DEFAULT_ATTENTION_LEVEL, Event, Market, Section, UserFollowedEvent, normalize_status
from . import follows
from .compare import (
    MARKET_CHANGE_POLICY,
    NO_INFO_FIELDS,
    changed_fields,
    event_change_policy,
    has_semantic_change,
    same_outcomes,
)

logger = logging.getLogger(__name__)

# Cacheable fields: everything upstream owns. All of them are rewritten when a
# change is detected, not just the fields that triggered it.
EVENT_FIELDS = (
    'title', 'description', 'status', 'created_at', 'end_date',
    'volume', 'liquidity', 'outcomes', 'raw',
)
MARKET_FIELDS = (
    'title', 'status', 'close_time', 'trading_close_time',
    'volume', 'liquidity', 'outcomes', 'raw',
)

# At most this many events per batch market sync request
MAX_BATCH_EVENTS = 50

CREATED = 'created'
UPDATED = 'updated'
UNCHANGED = 'unchanged'


@dataclass
class SyncFailure:
    external_id: str
    error: str


@dataclass
class PriceChange:
    market: Market
    old_outcomes: Optional[dict]


@dataclass
class SyncReport:
    """Per-batch outcome of a sync run"""
    created: list = field(default_factory=list)
    updated: list = field(default_factory=list)
    unchanged: list = field(default_factory=list)
    failures: List[SyncFailure] = field(default_factory=list)
    price_changes: List[PriceChange] = field(default_factory=list)
    adapter_returned_empty: bool = False
    error: Optional[str] = None

    def record(self, status: str, obj) -> None:
        getattr(self, status).append(obj)

    def counts(self) -> Dict[str, int]:
        return {
            CREATED: len(self.created),
            UPDATED: len(self.updated),
            UNCHANGED: len(self.unchanged),
            'failed': len(self.failures),
        }

    @property
    def ok(self) -> bool:
        return self.error is None


def _cache_values(item, names: Iterable[str], existing=None) -> dict:
    values = {}
    for name in names:
        value = getattr(item, name)
        if name == 'status':
            value = normalize_status(value)
        if value is None and existing is not None and name in NO_INFO_FIELDS:
            continue
        values[name] = value
    return values


def _upsert(model, lookup: dict, create_extra: dict, item, existing, names, policy):
    """
    Insert, update or touch one cached row.

    Returns (status, obj, previous_outcomes). A duplicate-key error on insert
    means a concurrent sync inserted the row first; we update it instead.
    Any other constraint violation propagates unchanged.
    """
    if existing is None:
        try:
            with transaction.atomic():
                obj = model.objects.create(**lookup, **create_extra, **_cache_values(item, names))
            return CREATED, obj, None
        except IntegrityError as e:
            existing = model.objects.filter(**lookup).first()
            if existing is None:
                logger.warning(f"{model.__name__} {item.external_id} violates a constraint ({lookup}): {e}")
                raise
            logger.info(f"{model.__name__} {item.external_id} inserted concurrently, updating instead")

    now = timezone.now()
    if has_semantic_change(item, existing, policy):
        logger.debug(f"{model.__name__} {item.external_id} changed: {changed_fields(item, existing, policy)}")
        previous_outcomes = existing.outcomes
        for name, value in _cache_values(item, names, existing).items():
            setattr(existing, name, value)
        existing.fetched_at = now
        existing.save()
        return UPDATED, existing, previous_outcomes

    model.objects.filter(pk=existing.pk).update(fetched_at=now)
    existing.fetched_at = now
    return UNCHANGED, existing, None


def _sort_key(obj, *names):
    for name in names:
        value = getattr(obj, name, None)
        if value is not None:
            return (0, value)
    return (1, 0)


class EventSyncService:
    """Fetch -> compare -> upsert for the events and markets of a site"""

    def __init__(self, adapter=None):
        # Fixed adapter for every site; resolved from Site.adapter_key otherwise
        self.adapter = adapter

    def _adapter_for(self, site):
        adapter = self.adapter or get_adapter(site.adapter_key, site=site)
        if adapter is None:
            raise UnknownAdapter(site.adapter_key)
        return adapter

    def sync_sections(self, site, prune: bool = False) -> List[Section]:
        """
        Upsert the adapter's sections for a site, refreshing names and slugs.

        With prune, sections the adapter no longer lists are deleted together
        with their cached events and markets. An empty adapter answer never
        prunes. The enabled flag of existing sections is kept.
        """
        adapter = self._adapter_for(site)
        try:
            fetched = adapter.get_sections(SiteInput.from_site(site))
        except AdapterError as e:
            logger.error(f"Section fetch failed for site {site.id} ({site.adapter_key}): {e}")
            raise
        except Exception as e:
            logger.error(f"Section fetch failed for site {site.id} ({site.adapter_key}): {e}")
            raise AdapterUnreachable(f"Failed to fetch sections: {e}") from e

        with transaction.atomic():
            for section_input in fetched:
                section, created = Section.objects.update_or_create(
                    site=site,
                    external_id=section_input.external_id,
                    defaults={'name': section_input.name, 'url_or_slug': section_input.url_or_slug}
                )
                if created:
                    logger.info(f"Added section {section.name} to site {site.id}")

            if prune and fetched:
                removed, _ = site.sections.exclude(
                    external_id__in=[s.external_id for s in fetched]
                ).delete()
                if removed:
                    logger.info(f"Pruned sections of site {site.id}: {removed} rows deleted")
            elif prune:
                logger.warning(f"Adapter returned no sections for site {site.id}, keeping existing ones")

        return list(site.sections.all())

    def sync_site_events(self, site, section_ids: Optional[List[int]] = None) -> SyncReport:
        """
        Sync events for the enabled sections of a site.

        Each event is upserted in its own savepoint; a failing record is
        reported and the rest of the batch continues. Adapter failures for the
        whole fetch raise AdapterError.
        """
        adapter = self._adapter_for(site)
        if not site.sections.exists():
            self.sync_sections(site)

        sections = site.sections.filter(enabled=True)
        if section_ids:
            sections = sections.filter(id__in=section_ids)
        sections = list(sections)

        report = SyncReport()
        if not sections:
            return report

        try:
            fetched = adapter.get_events_and_markets(
                SiteInput.from_site(site), [s.external_id for s in sections]
            )
        except AdapterError as e:
            logger.error(f"Adapter fetch failed for site {site.id} ({site.adapter_key}): {e}")
            raise
        except Exception as e:
            logger.error(f"Adapter fetch failed for site {site.id} ({site.adapter_key}): {e}")
            raise AdapterUnreachable(f"Adapter fetch failed: {e}") from e

        report.adapter_returned_empty = not fetched
        by_external_id = {s.external_id: s for s in sections}
        existing = {
            (e.section_id, e.external_id): e
            for e in Event.objects.filter(site=site, section__in=sections)
        }
        policy = event_change_policy()

        for item in fetched:
            section = by_external_id.get(item.section_external_id)
            if section is None:
                continue
            try:
                with transaction.atomic():
                    status, event, _ = _upsert(
                        Event,
                        {'site': site, 'section': section, 'external_id': item.external_id},
                        {},
                        item,
                        existing.get((section.id, item.external_id)),
                        EVENT_FIELDS,
                        policy,
                    )
                report.record(status, event)
            except Exception as e:
                logger.warning(f"Failed to sync event {item.external_id} for site {site.id}: {e}")
                report.failures.append(SyncFailure(item.external_id, str(e)))

        report.created.sort(key=lambda e: _sort_key(e, 'created_at'))
        report.updated.sort(key=lambda e: _sort_key(e, 'created_at'))
        logger.info(f"Synced events for site {site.id}: {report.counts()}")
        return report

    def sync_event_markets(self, event, user=None) -> SyncReport:
        """
        Sync all markets of one event.

        When a user is given, newly created markets are followed for that user
        with the event's attention level.
        """
        site = event.site
        adapter = self._adapter_for(site)

        try:
            fetched = adapter.get_markets_for_event(SiteInput.from_site(site), event.external_id)
        except AdapterError as e:
            logger.error(f"Market fetch failed for event {event.external_id} (site {site.id}): {e}")
            raise
        except Exception as e:
            logger.error(f"Market fetch failed for event {event.external_id} (site {site.id}): {e}")
            raise AdapterUnreachable(f"Adapter fetch failed: {e}") from e

        report = SyncReport(adapter_returned_empty=not fetched)
        existing = {m.external_id: m for m in event.markets.all()}

        for item in fetched:
            try:
                with transaction.atomic():
                    status, market, previous_outcomes = _upsert(
                        Market,
                        {'site': site, 'event': event, 'external_id': item.external_id},
                        {'section_id': event.section_id},
                        item,
                        existing.get(item.external_id),
                        MARKET_FIELDS,
                        MARKET_CHANGE_POLICY,
                    )
                report.record(status, market)
                if status == UPDATED and not same_outcomes(previous_outcomes, market.outcomes):
                    report.price_changes.append(PriceChange(market, previous_outcomes or {}))
            except Exception as e:
                logger.warning(f"Failed to sync market {item.external_id} for event {event.external_id}: {e}")
                report.failures.append(SyncFailure(item.external_id, str(e)))

        if user is not None and report.created:
            self._follow_new_markets(user, event, report.created)

        report.created.sort(key=lambda m: _sort_key(m, 'trading_close_time', 'close_time'))
        report.price_changes.sort(key=lambda c: _sort_key(c.market, 'trading_close_time', 'close_time'))
        logger.info(f"Synced markets for event {event.external_id}: {report.counts()}")
        return report

    def _follow_new_markets(self, user, event, markets) -> None:
        followed = UserFollowedEvent.objects.filter(user=user, event=event).first()
        level = followed.attention_level if followed else DEFAULT_ATTENTION_LEVEL
        for market in markets:
            try:
                follows.follow_market(user, market, attention_level=level)
            except CapacityExceeded as e:
                logger.warning(f"Not following new markets of {event.external_id} for user {user.id}: {e}")
                break

    def sync_events_markets(self, events, user=None) -> Dict[int, SyncReport]:
        """Market sync for several events; a failing event does not stop the others"""
        results = {}
        for event in events:
            try:
                results[event.id] = self.sync_event_markets(event, user=user)
            except (AdapterError, UnknownAdapter) as e:
                results[event.id] = SyncReport(
                    failures=[SyncFailure(event.external_id, str(e))],
                    error=str(e),
                )
        return results
