from django.urls import path
from . import views

app_name = 'tracker'

urlpatterns = [
    # Sites
    path('api/sites/', views.sites, name='sites'),
    path('api/sites/<int:site_id>/', views.site_detail, name='site_detail'),

    # Sections
    path('api/sites/<int:site_id>/sections/', views.site_sections, name='site_sections'),
    path('api/sites/<int:site_id>/sections/sync/', views.sync_site_sections, name='sync_site_sections'),
    path('api/sections/<int:section_id>/', views.section_detail, name='section_detail'),

    # Sync (rate limited)
    path('api/sites/<int:site_id>/events/sync/', views.sync_site_events, name='sync_site_events'),
    path('api/events/<int:event_id>/markets/sync/', views.sync_event_markets, name='sync_event_markets'),
    path('api/events/markets/sync/batch/', views.sync_events_markets_batch, name='sync_events_markets_batch'),
    path('api/sections/health/', views.sections_health, name='sections_health'),

    # Cached catalog
    path('api/sites/<int:site_id>/events/cached/', views.cached_events, name='cached_events'),
    path('api/sites/<int:site_id>/markets/cached/', views.cached_markets, name='cached_markets'),

    # Follows, attention levels and No evaluations
    path('api/events/<int:event_id>/follow/', views.event_follow, name='event_follow'),
    path('api/markets/<int:market_id>/follow/', views.market_follow, name='market_follow'),
    path('api/events/<int:event_id>/attention/', views.event_attention, name='event_attention'),
    path('api/markets/<int:market_id>/attention/', views.market_attention, name='market_attention'),
    path('api/events/attention/batch/', views.event_attention_batch, name='event_attention_batch'),
    path('api/markets/attention/batch/', views.market_attention_batch, name='market_attention_batch'),
    path('api/markets/<int:market_id>/no-evaluation/', views.market_no_evaluation, name='market_no_evaluation'),

    # Current user
    path('api/me/followed-event-ids/', views.followed_event_ids, name='followed_event_ids'),
    path('api/me/attention-map/', views.attention_map, name='attention_map'),
    path('api/me/market-attention-map/', views.market_attention_map, name='market_attention_map'),
    path('api/me/flagged-markets/', views.flagged_markets, name='flagged_markets'),
    path('api/me/followed-events/', views.followed_events, name='followed_events'),
    path('api/me/followed-markets/', views.followed_markets, name='followed_markets'),
]
