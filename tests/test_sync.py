"""Tests for the event/market sync service."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from conftest import BASE_TIME
from tracker.api.base import EventInput, MarketInput, SectionInput
from tracker.exceptions import AdapterUnreachable, MalformedUpstreamPayload, UnknownAdapter
from tracker.models import Event, Market, Section, UserFollowedEvent, UserFollowedMarket
from tracker.services import follows
from tracker.services.sync import EventSyncService


def event_input(external_id, **kwargs):
    values = {
        'section_external_id': 'Politics',
        'title': f"Event {external_id}",
        'status': 'open',
        'created_at': BASE_TIME,
        'end_date': BASE_TIME + timedelta(days=7),
        'volume': 100.0,
        'liquidity': 25.0,
        'outcomes': {'Yes': 0.6, 'No': 0.4},
    }
    values.update(kwargs)
    return EventInput(external_id=external_id, **values)


def market_input(external_id, **kwargs):
    values = {
        'title': f"Market {external_id}",
        'status': 'active',
        'close_time': BASE_TIME + timedelta(days=2),
        'trading_close_time': BASE_TIME + timedelta(days=2),
        'volume': 10.0,
        'outcomes': {'Yes': 0.7, 'No': 0.3},
    }
    values.update(kwargs)
    return MarketInput(external_id=external_id, **values)


@pytest.mark.django_db
class TestSyncSiteEvents:
    """Tests for EventSyncService.sync_site_events."""

    def test_creates_then_unchanged(self, site, section, fake_adapter) -> None:
        """Re-syncing identical data writes nothing."""
        fake_adapter.events = [event_input('EV1'), event_input('EV2')]
        service = EventSyncService(adapter=fake_adapter)

        first = service.sync_site_events(site)
        second = service.sync_site_events(site)

        assert first.counts() == {'created': 2, 'updated': 0, 'unchanged': 0, 'failed': 0}
        assert second.counts() == {'created': 0, 'updated': 0, 'unchanged': 2, 'failed': 0}
        assert Event.objects.filter(site=site).count() == 2

    def test_unchanged_refreshes_fetched_at(self, site, section, fake_adapter) -> None:
        fake_adapter.events = [event_input('EV1')]
        service = EventSyncService(adapter=fake_adapter)
        service.sync_site_events(site)
        before = Event.objects.get(external_id='EV1').fetched_at

        service.sync_site_events(site)

        assert Event.objects.get(external_id='EV1').fetched_at >= before

    def test_change_rewrites_all_fields(self, site, section, fake_adapter) -> None:
        service = EventSyncService(adapter=fake_adapter)
        fake_adapter.events = [event_input('EV1')]
        service.sync_site_events(site)

        fake_adapter.events = [event_input(
            'EV1', title='Renamed', end_date=BASE_TIME + timedelta(days=9), volume=500.0
        )]
        report = service.sync_site_events(site)

        assert report.counts()['updated'] == 1
        event = Event.objects.get(external_id='EV1')
        assert event.title == 'Renamed'
        assert event.volume == 500.0
        assert event.end_date == BASE_TIME + timedelta(days=9)

    def test_price_only_change_is_not_written_by_default(self, site, section, fake_adapter, settings) -> None:
        settings.TRACKER_EVENT_CHANGE_POLICY = 'narrow'
        service = EventSyncService(adapter=fake_adapter)
        fake_adapter.events = [event_input('EV1')]
        service.sync_site_events(site)

        fake_adapter.events = [event_input('EV1', volume=999.0)]
        report = service.sync_site_events(site)

        assert report.counts()['unchanged'] == 1
        assert Event.objects.get(external_id='EV1').volume == 100.0

    def test_full_policy_writes_price_changes(self, site, section, fake_adapter, settings) -> None:
        settings.TRACKER_EVENT_CHANGE_POLICY = 'full'
        service = EventSyncService(adapter=fake_adapter)
        fake_adapter.events = [event_input('EV1')]
        service.sync_site_events(site)

        fake_adapter.events = [event_input('EV1', volume=999.0)]
        report = service.sync_site_events(site)

        assert report.counts()['updated'] == 1
        assert Event.objects.get(external_id='EV1').volume == 999.0

    def test_missing_optional_fields_do_not_clear(self, site, section, fake_adapter) -> None:
        service = EventSyncService(adapter=fake_adapter)
        fake_adapter.events = [event_input('EV1')]
        service.sync_site_events(site)

        fake_adapter.events = [event_input(
            'EV1', end_date=BASE_TIME + timedelta(days=8), volume=None, outcomes=None
        )]
        report = service.sync_site_events(site)

        assert report.counts()['updated'] == 1
        event = Event.objects.get(external_id='EV1')
        assert event.volume == 100.0
        assert event.outcomes == {'Yes': 0.6, 'No': 0.4}

        # and the next identical sync is a no-op
        assert service.sync_site_events(site).counts()['unchanged'] == 1

    def test_failing_record_does_not_stop_batch(self, site, section, fake_adapter) -> None:
        fake_adapter.events = [event_input('EV1'), event_input('BAD', title=None), event_input('EV3')]

        report = EventSyncService(adapter=fake_adapter).sync_site_events(site)

        assert report.counts() == {'created': 2, 'updated': 0, 'unchanged': 0, 'failed': 1}
        assert report.failures[0].external_id == 'BAD'
        assert set(Event.objects.values_list('external_id', flat=True)) == {'EV1', 'EV3'}

    def test_duplicate_insert_falls_back_to_update(self, site, section, fake_adapter) -> None:
        """A second insert of the same key updates the existing row instead."""
        fake_adapter.events = [
            event_input('EV1'),
            event_input('EV1', end_date=BASE_TIME + timedelta(days=10)),
        ]

        report = EventSyncService(adapter=fake_adapter).sync_site_events(site)

        assert report.counts() == {'created': 1, 'updated': 1, 'unchanged': 0, 'failed': 0}
        assert Event.objects.get(external_id='EV1').end_date == BASE_TIME + timedelta(days=10)

    def test_new_events_sorted_by_created_at(self, site, section, fake_adapter) -> None:
        fake_adapter.events = [
            event_input('LATE', created_at=BASE_TIME + timedelta(days=3)),
            event_input('NONE', created_at=None),
            event_input('EARLY', created_at=BASE_TIME),
        ]

        report = EventSyncService(adapter=fake_adapter).sync_site_events(site)

        assert [e.external_id for e in report.created] == ['EARLY', 'LATE', 'NONE']

    def test_unknown_section_is_ignored(self, site, section, fake_adapter) -> None:
        fake_adapter.events = [event_input('EV1', section_external_id='Sports')]

        report = EventSyncService(adapter=fake_adapter).sync_site_events(site)

        assert report.counts()['created'] == 0
        assert not Event.objects.exists()

    def test_empty_adapter_result(self, site, section, fake_adapter) -> None:
        report = EventSyncService(adapter=fake_adapter).sync_site_events(site)

        assert report.adapter_returned_empty is True
        assert report.counts()['created'] == 0

    def test_creates_sections_for_new_site(self, site, fake_adapter) -> None:
        fake_adapter.events = [event_input('EV1')]

        report = EventSyncService(adapter=fake_adapter).sync_site_events(site)

        assert Section.objects.filter(site=site, external_id='Politics').exists()
        assert report.counts()['created'] == 1

    def test_section_filter(self, site, section, fake_adapter) -> None:
        sports = Section.objects.create(site=site, external_id='Sports', name='Sports')

        EventSyncService(adapter=fake_adapter).sync_site_events(site, section_ids=[sports.id])

        assert fake_adapter.requested_sections == [['Sports']]

    def test_disabled_sections_skip_fetch(self, site, section, fake_adapter) -> None:
        section.enabled = False
        section.save()

        report = EventSyncService(adapter=fake_adapter).sync_site_events(site)

        assert fake_adapter.calls == 0
        assert report.counts()['created'] == 0

    def test_adapter_error_propagates(self, site, section, fake_adapter) -> None:
        fake_adapter.events = MalformedUpstreamPayload("missing 'events'")

        with pytest.raises(MalformedUpstreamPayload):
            EventSyncService(adapter=fake_adapter).sync_site_events(site)

    def test_unexpected_fetch_error_is_wrapped(self, site, section, fake_adapter) -> None:
        fake_adapter.events = ConnectionError('connection reset')

        with pytest.raises(AdapterUnreachable):
            EventSyncService(adapter=fake_adapter).sync_site_events(site)

    def test_unknown_adapter_key(self, site, section) -> None:
        site.adapter_key = 'nope'
        site.save()

        with pytest.raises(UnknownAdapter):
            EventSyncService().sync_site_events(site)

    def test_adapter_resolved_from_site(self, site, section, fake_adapter) -> None:
        with patch('tracker.services.sync.get_adapter', return_value=fake_adapter) as get_adapter:
            EventSyncService().sync_site_events(site)

        get_adapter.assert_called_once_with('kalshi', site=site)


@pytest.mark.django_db
class TestSyncEventMarkets:
    """Tests for EventSyncService.sync_event_markets."""

    def test_creates_and_reports_price_changes(self, site, make_event, fake_adapter) -> None:
        event = make_event('EV1')
        fake_adapter.markets = {'EV1': [market_input('M1'), market_input('M2')]}
        service = EventSyncService(adapter=fake_adapter)

        first = service.sync_event_markets(event)

        fake_adapter.markets = {'EV1': [
            market_input('M1', outcomes={'Yes': 0.8, 'No': 0.2}),
            market_input('M2'),
        ]}
        second = service.sync_event_markets(event)

        assert first.counts()['created'] == 2
        assert second.counts() == {'created': 0, 'updated': 1, 'unchanged': 1, 'failed': 0}
        assert len(second.price_changes) == 1
        change = second.price_changes[0]
        assert change.market.external_id == 'M1'
        assert change.old_outcomes == {'Yes': 0.7, 'No': 0.3}
        assert Market.objects.get(external_id='M1').outcomes == {'Yes': 0.8, 'No': 0.2}

    def test_status_change_without_price_move(self, site, make_event, fake_adapter) -> None:
        event = make_event('EV1')
        service = EventSyncService(adapter=fake_adapter)
        fake_adapter.markets = {'EV1': [market_input('M1')]}
        service.sync_event_markets(event)

        fake_adapter.markets = {'EV1': [market_input('M1', status='closed')]}
        report = service.sync_event_markets(event)

        assert report.counts()['updated'] == 1
        assert report.price_changes == []
        assert Market.objects.get(external_id='M1').status == 'closed'

    def test_markets_inherit_event_section(self, site, section, make_event, fake_adapter) -> None:
        event = make_event('EV1')
        fake_adapter.markets = {'EV1': [market_input('M1')]}

        EventSyncService(adapter=fake_adapter).sync_event_markets(event)

        assert Market.objects.get(external_id='M1').section_id == section.id

    def test_new_markets_followed_at_event_level(self, user, site, make_event, fake_adapter) -> None:
        event = make_event('EV1')
        follows.follow_event(user, event, attention_level=3)
        fake_adapter.markets = {'EV1': [market_input('M1'), market_input('M2')]}

        EventSyncService(adapter=fake_adapter).sync_event_markets(event, user=user)

        levels = follows.market_attention_map(user)
        assert sorted(levels.values()) == [3, 3]

    def test_new_markets_default_level(self, user, site, make_event, fake_adapter) -> None:
        event = make_event('EV1')
        fake_adapter.markets = {'EV1': [market_input('M1')]}

        EventSyncService(adapter=fake_adapter).sync_event_markets(event, user=user)

        assert list(follows.market_attention_map(user).values()) == [1]
        assert not UserFollowedEvent.objects.exists()

    def test_auto_follow_stops_at_capacity(self, user, site, make_event, make_market, fake_adapter) -> None:
        filler = make_event('FILL')
        for i in range(follows.MAX_FOLLOWED_MARKETS):
            follows.follow_market(user, make_market(filler, f"F{i}"))
        event = make_event('EV1')
        fake_adapter.markets = {'EV1': [market_input('M1')]}

        report = EventSyncService(adapter=fake_adapter).sync_event_markets(event, user=user)

        assert report.counts()['created'] == 1
        assert UserFollowedMarket.objects.filter(user=user).count() == follows.MAX_FOLLOWED_MARKETS

    def test_sorted_by_trading_close_time(self, site, make_event, fake_adapter) -> None:
        event = make_event('EV1')
        fake_adapter.markets = {'EV1': [
            market_input('LATE', trading_close_time=BASE_TIME + timedelta(days=5)),
            market_input('SOON', trading_close_time=BASE_TIME + timedelta(days=1)),
        ]}

        report = EventSyncService(adapter=fake_adapter).sync_event_markets(event)

        assert [m.external_id for m in report.created] == ['SOON', 'LATE']

    def test_batch_isolates_failing_event(self, user, site, make_event, fake_adapter) -> None:
        ok_event = make_event('EV1')
        bad_event = make_event('EV2')
        fake_adapter.markets = {
            'EV1': [market_input('M1')],
            'EV2': AdapterUnreachable('Kalshi API request timed out'),
        }

        results = EventSyncService(adapter=fake_adapter).sync_events_markets([ok_event, bad_event], user=user)

        assert results[ok_event.id].counts()['created'] == 1
        assert results[ok_event.id].ok
        assert not results[bad_event.id].ok
        assert 'timed out' in results[bad_event.id].error
        assert results[bad_event.id].failures[0].external_id == 'EV2'


@pytest.mark.django_db
class TestConstraintFailures:
    """A record that violates a constraint is reported with its real cause."""

    def test_failure_carries_constraint_error(self, site, section, fake_adapter) -> None:
        fake_adapter.events = [event_input('BAD', title=None), event_input('EV2')]

        report = EventSyncService(adapter=fake_adapter).sync_site_events(site)

        assert report.counts()['created'] == 1
        failure = report.failures[0]
        assert failure.external_id == 'BAD'
        assert 'NOT NULL constraint failed' in failure.error
        assert 'does not exist' not in failure.error


@pytest.mark.django_db
class TestStatusNormalization:
    """Upstream status strings are stored in one canonical form."""

    def test_status_stored_lower_case(self, site, make_event, fake_adapter) -> None:
        event = make_event('EV1')
        fake_adapter.markets = {'EV1': [market_input('M1', status=' Active ')]}
        service = EventSyncService(adapter=fake_adapter)

        service.sync_event_markets(event)
        second = service.sync_event_markets(event)

        assert Market.objects.get(external_id='M1').status == 'active'
        assert second.counts()['unchanged'] == 1

    def test_event_status_lower_case(self, site, section, fake_adapter) -> None:
        fake_adapter.events = [event_input('EV1', status='OPEN')]

        EventSyncService(adapter=fake_adapter).sync_site_events(site)

        assert Event.objects.get(external_id='EV1').status == 'open'


@pytest.mark.django_db
class TestSyncSections:
    """Tests for EventSyncService.sync_sections."""

    def test_refreshes_names_and_keeps_enabled(self, site, section, fake_adapter) -> None:
        section.enabled = False
        section.save()
        fake_adapter.sections = [SectionInput('Politics', 'US Politics', 'politics')]

        EventSyncService(adapter=fake_adapter).sync_sections(site)

        section.refresh_from_db()
        assert section.name == 'US Politics'
        assert section.url_or_slug == 'politics'
        assert section.enabled is False

    def test_prune_removes_unlisted_sections(self, site, section, fake_adapter) -> None:
        sports = Section.objects.create(site=site, external_id='Sports', name='Sports')
        Event.objects.create(site=site, section=sports, external_id='GAME', title='Game')
        fake_adapter.sections = [SectionInput('Politics', 'Politics'), SectionInput('Crypto', 'Crypto')]

        sections = EventSyncService(adapter=fake_adapter).sync_sections(site, prune=True)

        assert [s.external_id for s in sections] == ['Crypto', 'Politics']
        assert not Section.objects.filter(external_id='Sports').exists()
        assert not Event.objects.filter(external_id='GAME').exists()

    def test_without_prune_keeps_unlisted(self, site, section, fake_adapter) -> None:
        fake_adapter.sections = [SectionInput('Crypto', 'Crypto')]

        EventSyncService(adapter=fake_adapter).sync_sections(site)

        assert Section.objects.filter(site=site).count() == 2

    def test_empty_answer_never_prunes(self, site, section, fake_adapter) -> None:
        fake_adapter.sections = []

        EventSyncService(adapter=fake_adapter).sync_sections(site, prune=True)

        assert Section.objects.filter(id=section.id).exists()

    def test_fetch_error_is_wrapped(self, site, section) -> None:
        adapter = MagicMock()
        adapter.get_sections.side_effect = ConnectionError('connection reset')

        with pytest.raises(AdapterUnreachable, match='Failed to fetch sections'):
            EventSyncService(adapter=adapter).sync_sections(site, prune=True)

        assert Section.objects.filter(id=section.id).exists()
