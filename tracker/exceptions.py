"""Error taxonomy for the ingestion and derived-state layer.

Adapter failures are caught at the gateway boundary and turned into data
(health results, sync reports); only whole-fetch failures surface to views,
which map them to HTTP status codes.
"""


class TrackerError(Exception):
    """Base class for tracker errors"""
    status_code = 500


class InvalidValue(TrackerError, ValueError):
    status_code = 400


class RateLimited(TrackerError):
    status_code = 429


class UnknownAdapter(TrackerError):
    status_code = 400

    def __init__(self, adapter_key):
        self.adapter_key = adapter_key
        super().__init__(f"Unknown adapter: {adapter_key}")


class AdapterError(TrackerError):
    status_code = 502


class AdapterUnreachable(AdapterError):
    """Network error, timeout or non-2xx response from the external platform"""


class MalformedUpstreamPayload(AdapterError):
    """The platform answered, but not with the shape we expect"""


class CapacityExceeded(TrackerError):
    status_code = 409

    def __init__(self, kind, limit):
        self.kind = kind
        self.limit = limit
        super().__init__(f"Cannot follow more than {limit} {kind}")


class NotFound(TrackerError):
    status_code = 404

    def __init__(self, kind, ids):
        self.kind = kind
        self.ids = list(ids)
        super().__init__(f"{kind} not found: {', '.join(str(i) for i in self.ids)}")
