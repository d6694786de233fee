from .health import check_health
from .sync import EventSyncService, SyncReport

__all__ = ['EventSyncService', 'SyncReport', 'check_health']
