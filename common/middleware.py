import json
import logging
import time

from django.utils.deprecation import MiddlewareMixin

logger = logging.getLogger("common")

# Endpoints whose query strings carry OAuth codes or state.
REDACTED_PATH_PREFIXES = ("/accounts/oauth/",)


class RequestLoggingMiddleware(MiddlewareMixin):
    """
    Log request start/end and unhandled exceptions as JSON lines.

    Bodies are never logged: they can contain push tokens and OAuth codes.
    """

    def process_request(self, request):
        request._calsync_started = time.monotonic()
        logger.info(json.dumps({
            "type": "request_start",
            "user": self._user_id(request),
            "method": request.method,
            "path": request.path,
            "query_params": self._query_params(request),
        }))

    def process_response(self, request, response):
        started = getattr(request, "_calsync_started", None)
        duration_ms = round((time.monotonic() - started) * 1000, 1) if started else None
        logger.info(json.dumps({
            "type": "request_end",
            "user": self._user_id(request),
            "method": request.method,
            "path": request.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }))
        return response

    def process_exception(self, request, exception):
        logger.exception(json.dumps({
            "type": "exception",
            "user": self._user_id(request),
            "method": request.method,
            "path": request.path,
            "exception": str(exception),
        }))
        return None

    def _user_id(self, request):
        user = getattr(request, "user", None)
        if user is not None and user.is_authenticated:
            return user.pk
        return "anonymous"

    def _query_params(self, request):
        if request.path.startswith(REDACTED_PATH_PREFIXES):
            return {key: "<redacted>" for key in request.GET.keys()}
        return request.GET.dict()
