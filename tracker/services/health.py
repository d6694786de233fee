import logging

from tracker.api import get_adapter
from tracker.api.base import HealthResult

logger = logging.getLogger(__name__)


def check_health(adapter_key: str) -> dict:
    """
    Check an adapter's catalog endpoint.

    Never raises: unknown adapters, network errors, timeouts and malformed
    payloads all come back as {'ok': False, 'error': ...}.
    """
    adapter = get_adapter(adapter_key)
    if adapter is None:
        return HealthResult(ok=False, error=f"Unsupported adapter_key: {adapter_key}").to_dict()

    try:
        result = adapter.fetch_health()
    except Exception as e:
        logger.error(f"Health check for {adapter_key} raised: {e}")
        result = HealthResult(ok=False, error=f"Failed to reach {adapter.display_name} API: {e}")

    if not result.ok:
        logger.warning(f"Health check failed for {adapter_key}: {result.error}")
    return result.to_dict()
