"""
HTTP middleware and exception handlers.

Order of a request through the stack:
SecurityHeaders -> CorrelationId -> RequestLogging -> RateLimit -> route.

Every error leaves the API in the same envelope,
``{"success": false, "error": {"code", "message", "details"}}``, with the
request's correlation ID in ``X-Correlation-ID``.
"""
import re
import time
import weakref
from collections import defaultdict
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.exceptions import AppException, ErrorCode, ReasonCode
from app.core.logging import get_correlation_id, get_logger, redact, set_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# Guessing a 6-digit code or flooding the webhook must be throttled per client
RATE_LIMITED_PATH_MARKERS = ("/validate", "/webhook")

# Probes hit the service every few seconds; they are logged at debug only
_QUIET_PATHS = ("/health", "/health/ready")

_BOOKING_PATH = re.compile(r"/bookings/(\d+)")


def _error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message, "details": details or {}}},
        headers={CORRELATION_HEADER: get_correlation_id(), **(headers or {})},
    )


def _booking_id(path: str) -> Optional[int]:
    match = _BOOKING_PATH.search(path)
    return int(match.group(1)) if match else None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Adopt the caller's correlation ID or mint one, and echo it back"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request; booking routes also log the booking id"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        fields: dict[str, Any] = {"method": request.method, "path": path}
        booking_id = _booking_id(path)
        if booking_id is not None:
            fields["booking_id"] = booking_id
        if request.query_params:
            fields["query_params"] = redact(dict(request.query_params))

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {path}",
                extra_data={**fields, "duration_ms": _elapsed_ms(started), "error": str(e)},
                exc_info=True,
            )
            raise

        fields.update(status_code=response.status_code, duration_ms=_elapsed_ms(started))
        message = f"{request.method} {path} -> {response.status_code}"
        if path in _QUIET_PATHS:
            logger.debug(message, extra_data=fields)
        elif response.status_code >= 400:
            logger.warning(message, extra_data=fields)
        else:
            logger.info(message, extra_data=fields)
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Denied booking actions and other expected failures"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Request denied: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "status_code": exc.status_code,
            "details": exc.details,
            "path": request.url.path,
        },
    )
    return _error_response(exc.status_code, exc.error_code.value, exc.message, exc.details)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies and parameters; submitted values are never echoed"""
    errors = [
        {"field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"), "message": error.get("msg")}
        for error in exc.errors()
    ]
    logger.info("Request rejected by validation", extra_data={"path": request.url.path, "errors": errors})
    return _error_response(422, ReasonCode.VALIDATION_ERROR.value, "Invalid request", {"errors": errors})


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected: logged in full, answered without internals"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={"exception_type": type(exc).__name__, "path": request.url.path},
        exc_info=True,
    )
    return _error_response(500, ErrorCode.INTERNAL_ERROR.value, "An unexpected error occurred")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    ``nosniff`` always; CSP ``upgrade-insecure-requests`` and HSTS outside
    DEBUG, so local HTTP development keeps working.
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window limit per client IP on code validation and webhook paths.

    All limited paths share one budget per IP, so spreading guesses over
    several bookings does not buy more attempts.
    """

    _instances: "weakref.WeakSet[RateLimitMiddleware]" = weakref.WeakSet()

    def __init__(
        self,
        app: FastAPI,
        *,
        max_requests: int = 20,
        window_seconds: int = 60,
        path_markers: tuple[str, ...] = RATE_LIMITED_PATH_MARKERS,
    ) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._path_markers = path_markers
        # IP -> request timestamps, oldest first
        self._requests: dict[str, list[float]] = defaultdict(list)
        RateLimitMiddleware._instances.add(self)

    @classmethod
    def reset_all(cls) -> None:
        """Forget every recorded request (tests)"""
        for instance in list(cls._instances):
            instance._requests.clear()

    def _cleanup_window(self, ip: str, now: float) -> None:
        cutoff = now - self._window_seconds
        recent = [ts for ts in self._requests.get(ip, ()) if ts >= cutoff]
        if recent:
            self._requests[ip] = recent
        else:
            self._requests.pop(ip, None)

    def _is_limited(self, path: str) -> bool:
        return any(marker in path for marker in self._path_markers)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if not self._is_limited(path):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.time()
        self._cleanup_window(client_ip, now)

        if len(self._requests.get(client_ip, ())) >= self._max_requests:
            logger.warning(
                "Rate limit exceeded",
                extra_data={
                    "client_ip": client_ip,
                    "path": path,
                    "booking_id": _booking_id(path),
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            return _error_response(
                429,
                "rate_limited",
                "Too many requests. Please try again later.",
                headers={"Retry-After": str(self._window_seconds)},
            )

        self._requests[client_ip].append(now)
        return await call_next(request)


def setup_middleware(app: FastAPI) -> None:
    from app.core.config import settings

    # The last middleware added is the outermost
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.CODE_VALIDATION_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.CODE_VALIDATION_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
