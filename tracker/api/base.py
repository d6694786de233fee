"""
Adapter contract for external market-data platforms.

Each platform implements Adapter and is looked up by Site.adapter_key.
Adapters return plain dataclasses; the sync service owns all persistence.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class SiteInput:
    """Read-only subset of a Site handed to adapters"""
    id: int
    base_url: str
    adapter_key: str

    @classmethod
    def from_site(cls, site) -> 'SiteInput':
        return cls(id=site.id, base_url=site.base_url, adapter_key=site.adapter_key)


@dataclass(frozen=True)
class SectionInput:
    external_id: str
    name: str
    url_or_slug: str = ''


@dataclass
class EventInput:
    """Event as returned by an adapter, before upsert. None means 'no information'."""
    external_id: str
    section_external_id: str
    title: str
    description: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    end_date: Optional[datetime] = None
    volume: Optional[float] = None
    liquidity: Optional[float] = None
    outcomes: Optional[Dict[str, float]] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass
class MarketInput:
    external_id: str
    title: str
    status: Optional[str] = None
    close_time: Optional[datetime] = None
    trading_close_time: Optional[datetime] = None
    volume: Optional[float] = None
    liquidity: Optional[float] = None
    outcomes: Optional[Dict[str, float]] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass
class HealthResult:
    ok: bool
    series_count: Optional[int] = None
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        if self.ok:
            return {'ok': True, 'seriesCount': self.series_count, **self.extra}
        return {'ok': False, 'error': self.error}


class Adapter(ABC):
    """Capability contract every platform integration implements"""

    key: str = ''
    display_name: str = ''

    @abstractmethod
    def get_sections(self, site: SiteInput) -> List[SectionInput]:
        """Sections (categories) available on the platform"""

    @abstractmethod
    def get_events_and_markets(self, site: SiteInput, section_ids: List[str]) -> List[EventInput]:
        """Events for the given section external ids"""

    @abstractmethod
    def get_markets_for_event(self, site: SiteInput, event_external_id: str) -> List[MarketInput]:
        """All markets under one event"""

    @abstractmethod
    def fetch_health(self) -> HealthResult:
        """Lightweight, time-bounded reachability check. Must not raise."""
