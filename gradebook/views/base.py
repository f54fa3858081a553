import json
import logging
from functools import wraps

from django.core.exceptions import ValidationError as DjangoValidationError
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt

from ..exceptions import GradebookError


logger = logging.getLogger(__name__)


def error_response(error, message, status, **extra):
    payload = {'error': error, 'message': message}
    payload.update(extra)
    return JsonResponse(payload, status=status)


def form_error_response(form):
    """400 with the form errors keyed by field ('__all__' for the rest)."""
    return error_response(
        'validation_error',
        'The request is not valid.',
        400,
        fields={name: list(errors) for name, errors in form.errors.items()},
    )


def parse_json_body(request):
    """Decode a JSON object body; ValueError when it is not one."""
    if not request.body:
        return {}
    try:
        payload = json.loads(request.body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f'Malformed JSON body: {e}')
    if not isinstance(payload, dict):
        raise ValueError('The JSON body must be an object.')
    return payload


def api_view(methods, public=False):
    """
    JSON endpoint decorator.

    Checks the method and, unless ``public``, the session; parses the JSON
    body into ``request.json`` and maps gradebook errors to {error, message} bodies:
    ValidationError -> 400, GradebookError -> its own status.
    """
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(request, *args, **kwargs):
            if request.method not in methods:
                return error_response('method_not_allowed', f'{request.method} is not allowed.', 405)
            if not public and not request.user.is_authenticated:
                return error_response('not_authenticated', 'Log in first.', 401)

            try:
                request.json = parse_json_body(request) if request.method == 'POST' else {}
            except ValueError as e:
                return error_response('malformed_request', str(e), 400)

            try:
                return view_func(request, *args, **kwargs)
            except GradebookError as e:
                if e.status_code >= 500:
                    logger.warning(f"{view_func.__name__}: {e.code}: {e.message}")
                body = e.as_dict()
                return JsonResponse(body, status=e.status_code)
            except DjangoValidationError as e:
                return error_response(
                    getattr(e, 'code', None) or 'validation_error',
                    ' '.join(e.messages),
                    400,
                )
        # Anonymous callers hold no session to protect
        return csrf_exempt(wrapper) if public else wrapper
    return decorator
