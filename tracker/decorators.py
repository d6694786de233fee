import functools
import json
import logging

from django.conf import settings
from django.core.exceptions import PermissionDenied
from django.http import Http404, JsonResponse

from .exceptions import TrackerError

logger = logging.getLogger(__name__)


def error_response(message: str, status: int) -> JsonResponse:
    return JsonResponse({'success': False, 'error': message}, status=status)


def safe_error_message(err, fallback: str = 'Internal server error') -> str:
    """Real message in DEBUG, a generic one otherwise"""
    if settings.DEBUG:
        return str(err) or fallback
    return fallback


def api_login_required(view_func):
    """401 for anonymous callers, before any core logic runs"""
    @functools.wraps(view_func)
    def wrapped(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return error_response('Unauthorized', 401)
        return view_func(request, *args, **kwargs)
    return wrapped


def allow_methods(*methods):
    def decorator(view_func):
        @functools.wraps(view_func)
        def wrapped(request, *args, **kwargs):
            if request.method not in methods:
                return error_response(f"{' or '.join(methods)} required", 405)
            return view_func(request, *args, **kwargs)
        return wrapped
    return decorator


def json_api(view_func):
    """Map tracker errors, 403/404 and unexpected failures onto JSON responses"""
    @functools.wraps(view_func)
    def wrapped(request, *args, **kwargs):
        try:
            return view_func(request, *args, **kwargs)
        except json.JSONDecodeError:
            return error_response('Invalid JSON in request body', 400)
        except TrackerError as e:
            return error_response(str(e), e.status_code)
        except PermissionDenied:
            return error_response('Forbidden', 403)
        except Http404 as e:
            return error_response(str(e) or 'Not found', 404)
        except Exception as e:
            logger.error(f"Unhandled error in {view_func.__name__}: {e}", exc_info=True)
            return error_response(safe_error_message(e), 500)
    return wrapped
