import json

from django.core.exceptions import ValidationError
from django.core.validators import URLValidator
from django.db.models import Q
from django.http import Http404, JsonResponse
from django.views.decorators.csrf import csrf_exempt

from .api import ADAPTER_KEYS
from .crypto import encrypt_optional
from .decorators import allow_methods, api_login_required, error_response, json_api
from .exceptions import InvalidValue
from .models import ACTIVE_STATUSES, Event, Market, Section, Site
from .ratelimit import rate_limit
from .services import EventSyncService, check_health, follows
from .services.sync import MAX_BATCH_EVENTS

CREDENTIAL_FIELDS = ('login_username', 'login_password', 'api_key_id', 'api_private_key')

validate_url = URLValidator(schemes=['http', 'https'])


def _iso(value):
    return value.isoformat() if value else None


def serialize_site(site):
    """Public view of a Site: credentials are reduced to a presence flag"""
    return {
        'id': site.id,
        'name': site.name,
        'base_url': site.base_url,
        'adapter_key': site.adapter_key,
        'has_credentials': site.has_credentials,
        'created_at': _iso(site.created_at),
    }


def serialize_section(section):
    return {
        'id': section.id,
        'site_id': section.site_id,
        'external_id': section.external_id,
        'name': section.name,
        'url_or_slug': section.url_or_slug or None,
        'enabled': section.enabled,
    }


def serialize_event(event):
    return {
        'id': event.id,
        'site_id': event.site_id,
        'section_id': event.section_id,
        'external_id': event.external_id,
        'title': event.title,
        'description': event.description,
        'status': event.status,
        'created_at': _iso(event.created_at),
        'end_date': _iso(event.end_date),
        'volume': event.volume,
        'liquidity': event.liquidity,
        'outcomes': event.outcomes,
        'fetched_at': _iso(event.fetched_at),
    }


def serialize_market(market, old_outcomes=None):
    data = {
        'id': market.id,
        'event_id': market.event_id,
        'site_id': market.site_id,
        'section_id': market.section_id,
        'external_id': market.external_id,
        'title': market.title,
        'status': market.status,
        'close_time': _iso(market.close_time),
        'trading_close_time': _iso(market.trading_close_time),
        'volume': market.volume,
        'liquidity': market.liquidity,
        'outcomes': market.outcomes,
        'fetched_at': _iso(market.fetched_at),
    }
    if old_outcomes is not None:
        data['old_outcomes'] = old_outcomes
    return data


def serialize_report(report):
    return {
        'counts': report.counts(),
        'failures': [{'external_id': f.external_id, 'error': f.error} for f in report.failures],
        'adapter_returned_empty': report.adapter_returned_empty,
    }


def serialize_market_report(report):
    data = serialize_report(report)
    data.update({
        'new_markets': [serialize_market(m) for m in report.created if m.is_active],
        'changed_markets': [
            serialize_market(c.market, c.old_outcomes)
            for c in report.price_changes if c.market.is_active
        ],
    })
    if report.error:
        data['error'] = report.error
    return data


def _load_body(request):
    if not request.body:
        return {}
    data = json.loads(request.body)
    if not isinstance(data, dict):
        raise InvalidValue('Request body must be a JSON object')
    return data


def _owned_site(request, site_id):
    try:
        return Site.objects.get(id=site_id, user=request.user)
    except Site.DoesNotExist:
        raise Http404('Site not found')


def _get_event(event_id):
    try:
        return Event.objects.select_related('site').get(id=event_id)
    except Event.DoesNotExist:
        raise Http404('Event not found')


def _get_market(market_id):
    try:
        return Market.objects.select_related('site').get(id=market_id)
    except Market.DoesNotExist:
        raise Http404('Market not found')


def _check_owner(request, item):
    if item.site.user_id != request.user.id:
        return error_response('Forbidden', 403)
    return None


def _id_list(value, name):
    """A JSON list of integer ids"""
    if not isinstance(value, list) or any(isinstance(i, bool) or not isinstance(i, int) for i in value):
        raise InvalidValue(f"{name} must be a list of integer ids")
    return value


def _attention_filters(request):
    """min_attention / unfollowed / mode=top query parameters of the followed lists"""
    raw = request.GET.get('min_attention', '1')
    try:
        min_attention = int(raw)
    except ValueError:
        raise InvalidValue('min_attention must be a non-negative integer')
    return {
        'min_attention': min_attention,
        'unfollowed': request.GET.get('unfollowed') == 'true',
        'top': request.GET.get('mode') == 'top',
    }


def _clean_site_fields(data, partial=False):
    """Validate site input; returns the model field updates"""
    updates = {}

    for name in ('name', 'base_url'):
        if name in data or not partial:
            value = data.get(name)
            value = value.strip() if isinstance(value, str) else ''
            if not value:
                raise InvalidValue(f"{name} is required")
            updates[name] = value

    if 'base_url' in updates:
        try:
            validate_url(updates['base_url'])
        except ValidationError:
            raise InvalidValue('base_url must be a valid http or https URL')

    if 'adapter_key' in data or not partial:
        if data.get('adapter_key') not in ADAPTER_KEYS:
            raise InvalidValue(f"adapter_key must be one of: {', '.join(ADAPTER_KEYS)}")
        updates['adapter_key'] = data['adapter_key']

    for name in CREDENTIAL_FIELDS:
        if name in data:
            updates[name] = encrypt_optional(data[name])

    return updates


# Sites

@csrf_exempt
@json_api
@api_login_required
@allow_methods('GET', 'POST')
def sites(request):
    """List the user's sites, or create one"""
    if request.method == 'GET':
        return JsonResponse([serialize_site(s) for s in request.user.sites.all()], safe=False)

    fields = _clean_site_fields(_load_body(request))
    site = Site.objects.create(user=request.user, **fields)
    return JsonResponse(serialize_site(site), status=201)


@csrf_exempt
@json_api
@api_login_required
@allow_methods('GET', 'PUT', 'DELETE')
def site_detail(request, site_id):
    site = _owned_site(request, site_id)

    if request.method == 'GET':
        return JsonResponse(serialize_site(site))

    if request.method == 'DELETE':
        follows.delete_site(site)
        return JsonResponse({'success': True})

    for name, value in _clean_site_fields(_load_body(request), partial=True).items():
        setattr(site, name, value)
    site.save()
    return JsonResponse(serialize_site(site))


# Sections

@csrf_exempt
@json_api
@api_login_required
@allow_methods('GET')
def site_sections(request, site_id):
    site = _owned_site(request, site_id)
    return JsonResponse([serialize_section(s) for s in site.sections.all()], safe=False)


@csrf_exempt
@json_api
@api_login_required
@allow_methods('POST')
@rate_limit('sections-sync')
def sync_site_sections(request, site_id):
    """Refresh sections from the adapter; sections it no longer lists are removed"""
    site = _owned_site(request, site_id)
    sections = EventSyncService().sync_sections(site, prune=True)
    return JsonResponse([serialize_section(s) for s in sections], safe=False, status=201)


@csrf_exempt
@json_api
@api_login_required
@allow_methods('PATCH')
def section_detail(request, section_id):
    """Enable or disable a section for event sync"""
    try:
        section = Section.objects.get(id=section_id, site__user=request.user)
    except Section.DoesNotExist:
        raise Http404('Section not found')

    enabled = _load_body(request).get('enabled')
    if not isinstance(enabled, bool):
        raise InvalidValue('enabled (boolean) is required')

    section.enabled = enabled
    section.save(update_fields=['enabled'])
    return JsonResponse(serialize_section(section))


# Sync

@csrf_exempt
@json_api
@api_login_required
@allow_methods('POST')
@rate_limit('events-sync')
def sync_site_events(request, site_id):
    """Fetch events from the site's adapter and upsert them"""
    site = _owned_site(request, site_id)
    section_ids = _load_body(request).get('section_ids')
    if section_ids is not None:
        section_ids = _id_list(section_ids, 'section_ids') or None

    report = EventSyncService().sync_site_events(site, section_ids=section_ids)

    data = serialize_report(report)
    data.update({
        'success': True,
        'new_events': [serialize_event(e) for e in report.created],
        'changed_events': [serialize_event(e) for e in report.updated],
    })
    return JsonResponse(data)


@csrf_exempt
@json_api
@api_login_required
@allow_methods('POST')
@rate_limit('markets-sync')
def sync_event_markets(request, event_id):
    event = _get_event(event_id)
    forbidden = _check_owner(request, event)
    if forbidden:
        return forbidden

    report = EventSyncService().sync_event_markets(event, user=request.user)
    return JsonResponse({'success': True, **serialize_market_report(report)})


@csrf_exempt
@json_api
@api_login_required
@allow_methods('POST')
@rate_limit('markets-sync-batch')
def sync_events_markets_batch(request):
    event_ids = _id_list(_load_body(request).get('event_ids'), 'event_ids')
    if not event_ids:
        raise InvalidValue('event_ids must be a non-empty list')
    if len(event_ids) > MAX_BATCH_EVENTS:
        raise InvalidValue(f"At most {MAX_BATCH_EVENTS} event_ids per request")

    events = list(
        Event.objects.select_related('site').filter(id__in=event_ids, site__user=request.user)
    )
    results = EventSyncService().sync_events_markets(events, user=request.user)
    return JsonResponse({
        'success': True,
        'results': {str(event_id): serialize_market_report(r) for event_id, r in results.items()},
    })


@csrf_exempt
@json_api
@api_login_required
@allow_methods('GET')
@rate_limit('sections-health')
def sections_health(request):
    """Reachability check for an adapter. Always 200 unless the key is unsupported."""
    adapter_key = request.GET.get('adapter_key', 'kalshi')
    result = check_health(adapter_key)
    status = 400 if adapter_key not in ADAPTER_KEYS else 200
    return JsonResponse(result, status=status)


# Cached catalog

def _active_status_filter():
    return Q(status__in=[s.value for s in ACTIVE_STATUSES]) | Q(status__isnull=True)


@csrf_exempt
@json_api
@api_login_required
@allow_methods('GET')
def cached_events(request, site_id):
    site = _owned_site(request, site_id)
    events = site.events.filter(_active_status_filter()).order_by('created_at')
    return JsonResponse({'success': True, 'events': [serialize_event(e) for e in events]})


@csrf_exempt
@json_api
@api_login_required
@allow_methods('GET')
def cached_markets(request, site_id):
    site = _owned_site(request, site_id)
    markets = site.markets.filter(status__in=[s.value for s in ACTIVE_STATUSES])
    markets = markets.order_by('trading_close_time', 'close_time')
    return JsonResponse({'success': True, 'markets': [serialize_market(m) for m in markets]})


# Follows and evaluations

@csrf_exempt
@json_api
@api_login_required
@allow_methods('POST', 'DELETE')
def event_follow(request, event_id):
    if request.method == 'DELETE':
        follows.unfollow_event(request.user, event_id)
        return JsonResponse({'ok': True})

    follows.follow_event(request.user, _get_event(event_id))
    return JsonResponse({'ok': True})


@csrf_exempt
@json_api
@api_login_required
@allow_methods('POST', 'DELETE')
def market_follow(request, market_id):
    if request.method == 'DELETE':
        follows.unfollow_market(request.user, market_id)
        return JsonResponse({'ok': True})

    follows.follow_market(request.user, _get_market(market_id))
    return JsonResponse({'ok': True})


@csrf_exempt
@json_api
@api_login_required
@allow_methods('PUT')
def event_attention(request, event_id):
    level = _load_body(request).get('attention_level')
    follows.set_event_attention(request.user, _get_event(event_id), level)
    return JsonResponse({'ok': True})


@csrf_exempt
@json_api
@api_login_required
@allow_methods('PUT')
def market_attention(request, market_id):
    level = _load_body(request).get('attention_level')
    follows.set_market_attention(request.user, _get_market(market_id), level)
    return JsonResponse({'ok': True})


@csrf_exempt
@json_api
@api_login_required
@allow_methods('PUT')
def event_attention_batch(request):
    """Body: updates = [{event_id, attention_level}, ...], at most 50"""
    count = follows.set_event_attention_batch(request.user, _load_body(request).get('updates'))
    return JsonResponse({'ok': True, 'count': count})


@csrf_exempt
@json_api
@api_login_required
@allow_methods('PUT')
def market_attention_batch(request):
    count = follows.set_market_attention_batch(request.user, _load_body(request).get('updates'))
    return JsonResponse({'ok': True, 'count': count})


@csrf_exempt
@json_api
@api_login_required
@allow_methods('PATCH')
def market_no_evaluation(request, market_id):
    """
    Set the user's No probability for a market.

    Body: no_probability (0-1), and optionally threshold (0-1) or
    threshold_percent (0-100, as typed by the user).
    """
    data = _load_body(request)
    threshold = data.get('threshold')
    if threshold is None and data.get('threshold_percent') is not None:
        threshold = follows.threshold_from_percent(data['threshold_percent'])

    evaluation = follows.upsert_no_evaluation(
        request.user, _get_market(market_id), data.get('no_probability'), threshold
    )
    return JsonResponse({
        'ok': True,
        'no_probability': evaluation.no_probability,
        'threshold': evaluation.threshold,
        'flagged': follows.is_flagged(evaluation),
    })


# Current user

@json_api
@api_login_required
@allow_methods('GET')
def followed_event_ids(request):
    return JsonResponse(follows.followed_event_ids(request.user), safe=False)


@json_api
@api_login_required
@allow_methods('GET')
def attention_map(request):
    return JsonResponse({str(k): v for k, v in follows.event_attention_map(request.user).items()})


@json_api
@api_login_required
@allow_methods('GET')
def market_attention_map(request):
    return JsonResponse({str(k): v for k, v in follows.market_attention_map(request.user).items()})


@json_api
@api_login_required
@allow_methods('GET')
def flagged_markets(request):
    return JsonResponse(follows.flagged_market_ids(request.user), safe=False)


@json_api
@api_login_required
@allow_methods('GET')
def followed_events(request):
    """Active followed events; ?min_attention=, ?unfollowed=true or ?mode=top"""
    rows = follows.followed_events(request.user, **_attention_filters(request))
    return JsonResponse([
        {
            **serialize_event(row.event),
            'site_name': row.event.site.name,
            'section_name': row.event.section.name,
            'attention_level': row.attention_level,
        }
        for row in rows
    ], safe=False)


@json_api
@api_login_required
@allow_methods('GET')
def followed_markets(request):
    rows = follows.followed_markets(request.user, **_attention_filters(request))
    return JsonResponse([
        {
            **serialize_market(row.market),
            'event_title': row.market.event.title,
            'site_name': row.market.site.name,
            'section_name': row.market.section.name,
            'attention_level': row.attention_level,
        }
        for row in rows
    ], safe=False)
