"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from tracker.api.base import Adapter, HealthResult, SectionInput
from tracker.models import Event, Market, Section, Site

BASE_TIME = datetime(2026, 11, 3, 18, 0, tzinfo=timezone.utc)


class FakeAdapter(Adapter):
    """In-memory adapter: returns whatever the test puts in events/markets"""

    key = 'kalshi'
    display_name = 'Fake'

    def __init__(self, events=None, markets=None, sections=None):
        self.events = events or []
        # event external id -> list of MarketInput, or an exception to raise
        self.markets = markets or {}
        self.sections = sections or [SectionInput('Politics', 'Politics')]
        self.requested_sections = []
        self.calls = 0

    def get_sections(self, site):
        return list(self.sections)

    def get_events_and_markets(self, site, section_ids):
        self.calls += 1
        self.requested_sections.append(list(section_ids))
        if isinstance(self.events, Exception):
            raise self.events
        return list(self.events)

    def get_markets_for_event(self, site, event_external_id):
        self.calls += 1
        result = self.markets.get(event_external_id, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    def fetch_health(self):
        return HealthResult(ok=True, series_count=1)


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    from tracker.ratelimit import limiter
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def user(django_user_model):
    return django_user_model.objects.create_user(username='alice', password='secret')


@pytest.fixture
def other_user(django_user_model):
    return django_user_model.objects.create_user(username='bob', password='secret')


@pytest.fixture
def site(user):
    return Site.objects.create(
        user=user,
        name='Kalshi',
        base_url='https://api.elections.kalshi.com/trade-api/v2',
        adapter_key='kalshi',
    )


@pytest.fixture
def section(site):
    return Section.objects.create(site=site, external_id='Politics', name='Politics')


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def make_event(site, section):
    """Factory for cached events on the default site/section"""
    def _make(external_id, **kwargs):
        defaults = {
            'title': f"Event {external_id}",
            'status': 'open',
            'created_at': BASE_TIME,
            'end_date': BASE_TIME + timedelta(days=7),
        }
        defaults.update(kwargs)
        return Event.objects.create(site=site, section=section, external_id=external_id, **defaults)
    return _make


@pytest.fixture
def make_market(site, section):
    def _make(event, external_id, **kwargs):
        defaults = {
            'title': f"Market {external_id}",
            'status': 'active',
            'outcomes': {'Yes': 0.5, 'No': 0.5},
        }
        defaults.update(kwargs)
        return Market.objects.create(
            site=site, section=section, event=event, external_id=external_id, **defaults
        )
    return _make
