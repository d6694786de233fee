from typing import Optional

from tracker.crypto import decrypt
from .base import Adapter, EventInput, HealthResult, MarketInput, SectionInput, SiteInput
from .kalshi import KalshiAdapter, KalshiClient

ADAPTERS = {
    KalshiAdapter.key: KalshiAdapter,
}

ADAPTER_KEYS = tuple(ADAPTERS)


def get_adapter(adapter_key: str, site=None) -> Optional[Adapter]:
    """Resolve an adapter by key; returns None if the key is unknown.

    When a site carries API credentials they are decrypted here and handed to
    the client, so they never travel further than the adapter.
    """
    adapter_cls = ADAPTERS.get(adapter_key)
    if adapter_cls is None:
        return None

    if site is not None and site.api_key_id and site.api_private_key:
        client = KalshiClient(
            api_key_id=decrypt(site.api_key_id),
            private_key_pem=decrypt(site.api_private_key),
        )
        return adapter_cls(client=client)
    return adapter_cls()


__all__ = [
    'ADAPTER_KEYS', 'Adapter', 'EventInput', 'HealthResult', 'KalshiAdapter',
    'KalshiClient', 'MarketInput', 'SectionInput', 'SiteInput', 'get_adapter',
]
