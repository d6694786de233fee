from django.conf import settings
from django.db import models
from django.utils import timezone


DEFAULT_ATTENTION_LEVEL = 1
DEFAULT_NO_EVALUATION_THRESHOLD = 0.1


class MarketStatus(models.TextChoices):
    OPEN = 'open', 'Open'
    ACTIVE = 'active', 'Active'
    PAUSED = 'paused', 'Paused'
    CLOSED = 'closed', 'Closed'
    SETTLED = 'settled', 'Settled'
    DETERMINED = 'determined', 'Determined'
    FINALIZED = 'finalized', 'Finalized'
    UNKNOWN = 'unknown', 'Unknown'


# Only these statuses are shown in user-facing tables. Everything else stays
# in storage for history.
ACTIVE_STATUSES = frozenset({MarketStatus.OPEN, MarketStatus.ACTIVE})


def normalize_status(status):
    """Stored form of an upstream status: stripped, lower case, None when blank"""
    if not isinstance(status, str):
        return None
    return status.strip().lower() or None


def classify_status(status):
    """Map a raw upstream status string onto MarketStatus"""
    status = normalize_status(status)
    if status is None:
        return MarketStatus.UNKNOWN
    try:
        return MarketStatus(status)
    except ValueError:
        return MarketStatus.UNKNOWN


def is_active_status(status) -> bool:
    return classify_status(status) in ACTIVE_STATUSES


class Site(models.Model):
    """User-configured instance of an adapter (base URL + credentials)"""
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='sites'
    )
    name = models.CharField(max_length=255)
    base_url = models.URLField(max_length=500)
    adapter_key = models.CharField(max_length=50)

    # Credentials are stored encrypted (see tracker.crypto) and never leave
    # the persistence boundary; only has_credentials is exposed.
    login_username = models.TextField(null=True, blank=True)
    login_password = models.TextField(null=True, blank=True)
    api_key_id = models.TextField(null=True, blank=True)
    api_private_key = models.TextField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"[{self.adapter_key}] {self.name}"

    @property
    def has_credentials(self) -> bool:
        return bool(
            self.login_username or self.login_password
            or self.api_key_id or self.api_private_key
        )


class Section(models.Model):
    """Category of a site (e.g. a Kalshi category) that events are grouped under"""
    site = models.ForeignKey(Site, on_delete=models.CASCADE, related_name='sections')
    external_id = models.CharField(max_length=255)
    name = models.CharField(max_length=255)
    url_or_slug = models.CharField(max_length=500, blank=True)
    enabled = models.BooleanField(default=True)

    class Meta:
        unique_together = ['site', 'external_id']
        ordering = ['name']

    def __str__(self):
        return f"{self.site.name} / {self.name}"


class Event(models.Model):
    """Cached upstream event - container for related markets"""
    site = models.ForeignKey(Site, on_delete=models.CASCADE, related_name='events')
    section = models.ForeignKey(Section, on_delete=models.CASCADE, related_name='events')

    # External identifier, unique only within a site/section
    external_id = models.CharField(max_length=255)

    title = models.CharField(max_length=500)
    description = models.TextField(null=True, blank=True)
    status = models.CharField(max_length=50, null=True, blank=True)

    # Upstream timestamps: created_at is the primary market's trading close
    # time, end_date is when the last market closes.
    created_at = models.DateTimeField(null=True, blank=True)
    end_date = models.DateTimeField(null=True, blank=True)

    volume = models.FloatField(null=True, blank=True)
    liquidity = models.FloatField(null=True, blank=True)
    # Format: {"Yes": 0.65, "No": 0.35}
    outcomes = models.JSONField(null=True, blank=True)
    raw = models.JSONField(null=True, blank=True, help_text="Raw API response for this event")

    fetched_at = models.DateTimeField(default=timezone.now)

    class Meta:
        unique_together = ['site', 'section', 'external_id']
        ordering = ['created_at']

    def __str__(self):
        return f"[{self.external_id}] {self.title}"

    @property
    def is_active(self) -> bool:
        return self.status is None or is_active_status(self.status)


class Market(models.Model):
    """Single tradable contract within an event"""
    site = models.ForeignKey(Site, on_delete=models.CASCADE, related_name='markets')
    section = models.ForeignKey(Section, on_delete=models.CASCADE, related_name='markets')
    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name='markets')

    external_id = models.CharField(max_length=255)

    title = models.CharField(max_length=500)
    status = models.CharField(max_length=50, null=True, blank=True)

    close_time = models.DateTimeField(null=True, blank=True)
    trading_close_time = models.DateTimeField(null=True, blank=True)

    volume = models.FloatField(null=True, blank=True)
    liquidity = models.FloatField(null=True, blank=True)
    outcomes = models.JSONField(null=True, blank=True)
    raw = models.JSONField(null=True, blank=True)

    fetched_at = models.DateTimeField(default=timezone.now)

    class Meta:
        unique_together = ['site', 'event', 'external_id']

    def __str__(self):
        return f"[{self.external_id}] {self.title}"

    @property
    def is_active(self) -> bool:
        return is_active_status(self.status)


class UserFollowedEvent(models.Model):
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='followed_events'
    )
    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name='followed_by')
    attention_level = models.PositiveIntegerField(default=DEFAULT_ATTENTION_LEVEL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ['user', 'event']

    def __str__(self):
        return f"{self.user_id} -> event {self.event_id}"


class UserFollowedMarket(models.Model):
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='followed_markets'
    )
    market = models.ForeignKey(Market, on_delete=models.CASCADE, related_name='followed_by')
    attention_level = models.PositiveIntegerField(default=DEFAULT_ATTENTION_LEVEL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ['user', 'market']

    def __str__(self):
        return f"{self.user_id} -> market {self.market_id}"


class MarketNoEvaluation(models.Model):
    """User's estimate of the No probability for a market, with a highlight threshold"""
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='no_evaluations'
    )
    market = models.ForeignKey(Market, on_delete=models.CASCADE, related_name='no_evaluations')

    # Both stored as fractions in [0, 1]
    no_probability = models.FloatField()
    threshold = models.FloatField(default=DEFAULT_NO_EVALUATION_THRESHOLD)

    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ['user', 'market']

    def __str__(self):
        return f"{self.user_id} -> market {self.market_id}: {self.no_probability:.2f}"

    @property
    def is_flagged(self) -> bool:
        return self.no_probability >= self.threshold
