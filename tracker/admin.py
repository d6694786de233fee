from django.contrib import admin
from .models import Event, Market, MarketNoEvaluation, Section, Site, UserFollowedEvent, UserFollowedMarket


@admin.register(Site)
class SiteAdmin(admin.ModelAdmin):
    list_display = ['name', 'adapter_key', 'user', 'has_credentials', 'created_at']
    list_filter = ['adapter_key']
    search_fields = ['name', 'base_url']
    # Encrypted credentials stay out of the admin
    exclude = ['login_username', 'login_password', 'api_key_id', 'api_private_key']


@admin.register(Section)
class SectionAdmin(admin.ModelAdmin):
    list_display = ['name', 'site', 'external_id', 'enabled']
    list_filter = ['enabled']


@admin.register(Event)
class EventAdmin(admin.ModelAdmin):
    list_display = ['title', 'site', 'external_id', 'status', 'created_at', 'end_date', 'fetched_at']
    list_filter = ['site', 'status']
    search_fields = ['title', 'external_id']
    ordering = ['-fetched_at']


@admin.register(Market)
class MarketAdmin(admin.ModelAdmin):
    list_display = ['title', 'event', 'external_id', 'status', 'volume', 'fetched_at']
    list_filter = ['site', 'status']
    search_fields = ['title', 'external_id']
    ordering = ['-fetched_at']


@admin.register(UserFollowedEvent)
class UserFollowedEventAdmin(admin.ModelAdmin):
    list_display = ['user', 'event', 'attention_level', 'created_at']


@admin.register(UserFollowedMarket)
class UserFollowedMarketAdmin(admin.ModelAdmin):
    list_display = ['user', 'market', 'attention_level', 'created_at']


@admin.register(MarketNoEvaluation)
class MarketNoEvaluationAdmin(admin.ModelAdmin):
    list_display = ['user', 'market', 'no_probability', 'threshold', 'updated_at']
