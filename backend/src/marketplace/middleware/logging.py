"""Structured logging setup and request context middleware."""
import logging
import re
import sys
import time
import uuid
from typing import Any, MutableMapping

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from marketplace.config import settings

FUNCTIONS_PREFIX = "/functions/v1/"

# Event keys whose values must never reach a log line
SENSITIVE_KEYS = frozenset({"client_secret", "authorization", "apikey", "stripe_signature"})

# Intent and setup intent client secrets look like pi_123_secret_abc / seti_123_secret_abc
CLIENT_SECRET_PATTERN = re.compile(r"\b(pi|seti)_[A-Za-z0-9]+_secret_[A-Za-z0-9]+")

REDACTED = "[redacted]"


def redact_secrets(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Mask credentials and client secrets anywhere in the event."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, str) and "_secret_" in value:
            event_dict[key] = CLIENT_SECRET_PATTERN.sub(REDACTED, value)
    return event_dict


def setup_logging() -> None:
    """Configure structured logging with structlog."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.format_exc_info,
    ]

    if settings.app_env == "production":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)


def function_name(path: str) -> str | None:
    """Backend function addressed by a request path, if any."""
    if not path.startswith(FUNCTIONS_PREFIX):
        return None
    return path[len(FUNCTIONS_PREFIX):].strip("/") or None


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Per-request logging context for the backend functions.

    Every log line of a request carries its request_id and, for function
    calls, the function name. The closing ``request_completed`` line also
    carries the authenticated user, which ``get_current_user`` leaves on
    ``request.state``.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        function = function_name(request.url.path)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, method=request.method)
        if function is not None:
            structlog.contextvars.bind_contextvars(function=function)
        else:
            structlog.contextvars.bind_contextvars(path=request.url.path)

        logger = structlog.get_logger(__name__)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("request_failed", exc_info=exc, user_id=getattr(request.state, "user_id", None))
            raise

        logger.info(
            "request_completed",
            status_code=response.status_code,
            user_id=getattr(request.state, "user_id", None),
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        response.headers["X-Request-ID"] = request_id
        return response
