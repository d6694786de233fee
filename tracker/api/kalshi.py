import base64
import datetime
import logging
import time
from typing import Dict, List, Optional
from urllib.parse import quote

import requests
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from django.conf import settings

from tracker.exceptions import AdapterUnreachable, MalformedUpstreamPayload
from .base import Adapter, EventInput, HealthResult, MarketInput, SectionInput, SiteInput

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'https://api.elections.kalshi.com/trade-api/v2'

# Kalshi reports open markets as "active", older payloads use "open"
OPEN_MARKET_STATUSES = {'open', 'active'}

# Top-level categories matching the site navigation.
# external_id = API category name used for filtering, name = display label.
KALSHI_SECTIONS = [
    SectionInput('Sports', 'Sports'),
    SectionInput('Politics', 'Politics'),
    SectionInput('Entertainment', 'Culture'),
    SectionInput('Crypto', 'Crypto'),
    SectionInput('Climate and Weather', 'Climate'),
    SectionInput('Economics', 'Economics'),
    SectionInput('Mentions', 'Mentions'),
    SectionInput('Companies', 'Companies'),
    SectionInput('Financials', 'Financials'),
    SectionInput('Science and Technology', 'Tech & Science'),
    SectionInput('Elections', 'Elections'),
    SectionInput('World', 'World'),
    SectionInput('Health', 'Health'),
]


class KalshiClient:
    """Client for Kalshi API"""

    MAX_RETRIES = 3
    RETRY_DELAY = 1
    REQUEST_TIMEOUT = 15
    MAX_RETRY_AFTER = 30
    # Adaptive rate limiting settings
    BASE_REQUEST_INTERVAL = 0.08  # Basic tier allows ~20 req/s
    MAX_REQUEST_INTERVAL = 2.0
    BACKOFF_MULTIPLIER = 2.0
    RECOVERY_FACTOR = 0.95

    def __init__(self, base_url: str = None, api_key_id: str = None, private_key_pem: str = None):
        self.base_url = (base_url or getattr(settings, 'KALSHI_API_BASE', '') or DEFAULT_BASE_URL).rstrip('/')
        self.api_key_id = (api_key_id or getattr(settings, 'KALSHI_API_KEY_ID', '') or '').strip('"\'')
        private_key_str = private_key_pem or getattr(settings, 'KALSHI_PRIVATE_KEY', '') or ''

        self.private_key = None
        self._last_request_time = 0.0
        self._current_interval = self.BASE_REQUEST_INTERVAL
        if private_key_str and len(private_key_str) > 100:
            try:
                private_key_str = private_key_str.strip('"\'')
                private_key_str = private_key_str.replace('\\n', '\n')
                self.private_key = serialization.load_pem_private_key(
                    private_key_str.encode('utf-8'),
                    password=None,
                    backend=default_backend()
                )
            except (ValueError, TypeError) as e:
                logger.warning(f"Could not load Kalshi private key: {e}")

    def _create_signature(self, timestamp: str, method: str, path: str) -> str:
        """Create RSA-PSS signature for request"""
        if not self.private_key:
            return ''

        path_without_query = path.split('?')[0]
        message = f"{timestamp}{method}{path_without_query}".encode('utf-8')
        signature = self.private_key.sign(
            message,
            padding.PSS(
                mgf=padding.MGF1(hashes.SHA256()),
                salt_length=padding.PSS.DIGEST_LENGTH
            ),
            hashes.SHA256()
        )
        return base64.b64encode(signature).decode('utf-8')

    def _get_headers(self, method: str, path: str) -> dict:
        """Get headers for request (authenticated if possible)"""
        headers = {'Accept': 'application/json'}

        if self.private_key and self.api_key_id:
            timestamp = str(int(datetime.datetime.now().timestamp() * 1000))
            signature = self._create_signature(timestamp, method, path)
            headers.update({
                'KALSHI-ACCESS-KEY': self.api_key_id,
                'KALSHI-ACCESS-SIGNATURE': signature,
                'KALSHI-ACCESS-TIMESTAMP': timestamp,
            })

        return headers

    def _rate_limit(self):
        """Enforce adaptive rate limiting between API requests"""
        now = time.monotonic()
        elapsed = now - self._last_request_time
        if elapsed < self._current_interval:
            time.sleep(self._current_interval - elapsed)
        self._last_request_time = time.monotonic()

    def _backoff(self):
        """Increase rate limit interval after hitting 429"""
        old_interval = self._current_interval
        self._current_interval = min(
            self._current_interval * self.BACKOFF_MULTIPLIER,
            self.MAX_REQUEST_INTERVAL
        )
        logger.info(f"Rate limit hit, increasing interval: {old_interval:.3f}s -> {self._current_interval:.3f}s")

    def _recover(self):
        """Slowly decrease rate limit interval after successful requests"""
        if self._current_interval > self.BASE_REQUEST_INTERVAL:
            self._current_interval = max(
                self._current_interval * self.RECOVERY_FACTOR,
                self.BASE_REQUEST_INTERVAL
            )

    def _build_path(self, path: str, params: dict = None) -> str:
        if params:
            query_parts = [f"{k}={v}" for k, v in params.items() if v is not None]
            if query_parts:
                return path + '?' + '&'.join(query_parts)
        return path

    def _request(self, method: str, path: str, params: dict = None) -> dict:
        """Make request to Kalshi API with retry logic and adaptive rate limiting"""
        path = self._build_path(path, params)
        url = self.base_url + path
        headers = self._get_headers(method, path)

        last_error = None
        for attempt in range(self.MAX_RETRIES + 1):
            try:
                self._rate_limit()
                response = requests.request(method, url, headers=headers, timeout=self.REQUEST_TIMEOUT)

                if response.status_code == 429 and attempt < self.MAX_RETRIES:
                    self._backoff()
                    retry_after = response.headers.get('Retry-After')
                    try:
                        wait_time = min(float(retry_after), self.MAX_RETRY_AFTER)
                    except (TypeError, ValueError):
                        wait_time = self.RETRY_DELAY * (2 ** attempt)
                    logger.warning(f"Kalshi API rate limited (429), waiting {wait_time:.2f}s before retry")
                    time.sleep(wait_time)
                    continue

                response.raise_for_status()
                self._recover()
                return response.json()
            except requests.exceptions.Timeout as e:
                last_error = e
                logger.warning(f"Kalshi API attempt {attempt + 1} timed out: {url}")
            except requests.exceptions.JSONDecodeError as e:
                raise MalformedUpstreamPayload(f"Kalshi API returned invalid JSON: {e}") from e
            except requests.exceptions.RequestException as e:
                last_error = e
                logger.warning(f"Kalshi API attempt {attempt + 1} failed: {e}")

            if attempt < self.MAX_RETRIES:
                time.sleep(self.RETRY_DELAY * (2 ** attempt))

        if isinstance(last_error, requests.exceptions.Timeout):
            raise AdapterUnreachable("Kalshi API request timed out") from last_error
        raise AdapterUnreachable(f"Kalshi API error: {last_error}") from last_error

    def get_events(
        self,
        status: str = 'open',
        limit: int = 200,
        cursor: str = None,
        with_nested_markets: bool = True,
        series_ticker: str = None
    ) -> dict:
        """Get events from Kalshi with optional filtering"""
        params = {
            'status': status,
            'limit': limit,
            'cursor': cursor,
            'with_nested_markets': str(with_nested_markets).lower(),
            'series_ticker': series_ticker,
        }
        return self._request('GET', '/events', params)

    def get_event(self, event_ticker: str) -> dict:
        path = f"/events/{quote(event_ticker, safe='')}"
        return self._request('GET', path, {'with_nested_markets': 'true'})

    def get_markets(self, event_ticker: str, limit: int = 200) -> dict:
        return self._request('GET', '/markets', {'event_ticker': event_ticker, 'limit': limit})

    def check_series(self, category: str = 'Politics') -> requests.Response:
        """Single unretried request used by the health check"""
        url = f"{self.base_url}/series"
        return requests.get(
            url,
            params={'category': category},
            headers={'Accept': 'application/json'},
            timeout=self.REQUEST_TIMEOUT
        )


def _parse_time(value) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        return datetime.datetime.fromisoformat(value.replace('Z', '+00:00'))
    except (AttributeError, ValueError):
        logger.debug(f"Unparseable Kalshi timestamp: {value!r}")
        return None


def _trading_deadline(market: dict) -> Optional[str]:
    return market.get('expiration_time') or market.get('close_time')


def _liquidity(market: dict) -> Optional[float]:
    raw = market.get('liquidity_dollars')
    if raw is None:
        raw = market.get('liquidity')
        # Integer liquidity is reported in cents
        return raw / 100 if isinstance(raw, (int, float)) else None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _outcomes(market: dict) -> Optional[Dict[str, float]]:
    yes_price = (
        market.get('last_price_dollars')
        or market.get('yes_ask_dollars')
        or market.get('yes_bid_dollars')
    )
    if not yes_price:
        return None
    try:
        yes = float(yes_price)
    except (TypeError, ValueError):
        return None
    return {'Yes': yes, 'No': 1 - yes}


def _volume(market: dict) -> Optional[float]:
    volume = market.get('volume')
    return float(volume) if isinstance(volume, (int, float)) else None


class KalshiAdapter(Adapter):
    """Maps Kalshi events/markets onto the adapter dataclasses"""

    key = 'kalshi'
    display_name = 'Kalshi'

    def __init__(self, client: KalshiClient = None):
        self.client = client or KalshiClient()

    def get_sections(self, site: SiteInput) -> List[SectionInput]:
        return list(KALSHI_SECTIONS)

    def _start_of_tomorrow(self) -> datetime.datetime:
        today = datetime.datetime.now(datetime.timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        return today + datetime.timedelta(days=1)

    def _to_event_input(self, event_data: dict, category: str, primary: dict, last: dict) -> EventInput:
        end_date = (
            last.get('close_time') or last.get('expiration_time') or event_data.get('strike_date')
        )
        return EventInput(
            external_id=event_data['event_ticker'],
            section_external_id=category,
            title=event_data.get('title') or event_data['event_ticker'],
            description=event_data.get('sub_title') or None,
            status='open',
            created_at=_parse_time(_trading_deadline(primary)),
            end_date=_parse_time(end_date),
            volume=_volume(primary),
            liquidity=_liquidity(primary),
            outcomes=_outcomes(primary),
            raw={'event': event_data, 'market': primary},
        )

    def get_events_and_markets(self, site: SiteInput, section_ids: List[str]) -> List[EventInput]:
        """
        Fetch open events for the given categories.

        The primary market of an event is the open market with the soonest
        trading deadline that is not before tomorrow; events without one are
        skipped.
        """
        categories = set(section_ids)
        tomorrow = self._start_of_tomorrow()
        results = []

        cursor = None
        while True:
            response = self.client.get_events(status='open', cursor=cursor, with_nested_markets=True)
            events = response.get('events')
            if not isinstance(events, list):
                raise MalformedUpstreamPayload("Kalshi events response missing 'events' list")

            for event_data in events:
                category = event_data.get('category')
                if not category or category not in categories or not event_data.get('event_ticker'):
                    continue

                open_markets = [
                    m for m in event_data.get('markets') or []
                    if m.get('status') in OPEN_MARKET_STATUSES
                ]
                open_markets.sort(key=lambda m: _trading_deadline(m) or '')

                primary = None
                for market in open_markets:
                    deadline = _parse_time(_trading_deadline(market))
                    if deadline and deadline >= tomorrow:
                        primary = market
                        break
                if primary is None:
                    continue

                last = open_markets[-1] if len(open_markets) > 1 else primary
                results.append(self._to_event_input(event_data, category, primary, last))

            cursor = response.get('cursor')
            if not cursor or not events:
                break

            logger.info(f"Fetched page of {len(events)} Kalshi events")

        return results

    def get_markets_for_event(self, site: SiteInput, event_external_id: str) -> List[MarketInput]:
        """Nested markets from GET /events/{ticker}, falling back to GET /markets"""
        event_response = self.client.get_event(event_external_id)
        event_data = event_response.get('event') or {}
        markets = event_response.get('markets') or event_data.get('markets') or []

        if not markets:
            markets = self.client.get_markets(event_external_id).get('markets') or []

        results = []
        for market in markets:
            ticker = market.get('ticker')
            if not ticker:
                continue
            results.append(MarketInput(
                external_id=ticker,
                title=market.get('title') or ticker,
                status=market.get('status'),
                close_time=_parse_time(market.get('close_time') or market.get('expiration_time')),
                trading_close_time=_parse_time(_trading_deadline(market)),
                volume=_volume(market),
                liquidity=_liquidity(market),
                outcomes=_outcomes(market),
                raw={'market': market},
            ))
        return results

    def fetch_health(self) -> HealthResult:
        try:
            response = self.client.check_series()
        except requests.exceptions.Timeout:
            return HealthResult(ok=False, error="Failed to reach Kalshi API: request timed out")
        except requests.exceptions.RequestException as e:
            return HealthResult(ok=False, error=f"Failed to reach Kalshi API: {e}")

        if not response.ok:
            return HealthResult(ok=False, error=f"Kalshi API returned {response.status_code} {response.reason}")

        try:
            data = response.json()
        except ValueError:
            data = None

        series = data.get('series') if isinstance(data, dict) else None
        if not isinstance(series, list):
            return HealthResult(ok=False, error="Kalshi API response missing or invalid series array")

        return HealthResult(ok=True, series_count=len(series))
