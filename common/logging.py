from __future__ import annotations

import contextvars
import json
import logging
import time
import uuid
from datetime import datetime, timezone

_request_id = contextvars.ContextVar("request_id", default=None)


def current_request_id():
    return _request_id.get()


class RequestIdFilter(logging.Filter):
    """Stamp records emitted while serving a request with that request's id."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = _request_id.get()
        return True


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logs."""

    EXTRA_KEYS = (
        "request_id",
        "path",
        "method",
        "status_code",
        "duration_ms",
        "remote_addr",
        "user_id",
    )

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in self.EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class RequestLogMiddleware:
    """Propagate X-Request-ID into the log context and emit one access log per request."""

    def __init__(self, get_response):
        self.get_response = get_response
        self.logger = logging.getLogger("api.request")

    def __call__(self, request):
        started_at = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.request_id = request_id
        token = _request_id.set(request_id)

        try:
            response = self.get_response(request)

            duration_ms = round((time.perf_counter() - started_at) * 1000, 2)
            user = getattr(request, "user", None)
            user_id = str(user.id) if user is not None and getattr(user, "is_authenticated", False) else None

            self.logger.info(
                "request_completed",
                extra={
                    "method": request.method,
                    "path": request.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                    "remote_addr": request.META.get("REMOTE_ADDR"),
                    "user_id": user_id,
                },
            )
        finally:
            _request_id.reset(token)

        response["X-Request-ID"] = request_id
        return response
