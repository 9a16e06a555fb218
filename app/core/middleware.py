"""
FastAPI Middleware

- Correlation ID per request (Meta never sends one, so webhook calls always get a fresh id)
- Request logging with wa_id and verify-token masking, plus a warning when a
  webhook call overruns the inline processing budget
- Security headers
- Exception handlers; a webhook POST is acknowledged with 200 even when
  something escapes the route

There is no rate limiting on the webhook: the provider must always get a
200 and duplicate floods are absorbed by the dedup gate.
"""
import re
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings
from app.core.exceptions import AppException, ErrorCode
from app.core.logging import get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

WEBHOOK_PATH_SUFFIX = "/webhook"

# wa_id בתוך path או query: 4 ספרות ראשונות ו-4 אחרונות נשארות
_PHONE_RE = re.compile(r"(\+?\d{4})\d{4}(\d{2,})")

_SECRET_QUERY_PARAMS = frozenset({"hub.verify_token"})


def _mask_pii(value: str) -> str:
    return _PHONE_RE.sub(r"\1****\2", value)


def _is_webhook_delivery(request: Request) -> bool:
    return request.method == "POST" and request.url.path.endswith(WEBHOOK_PATH_SUFFIX)


def _request_fields(request: Request) -> dict:
    return {
        "method": request.method,
        "path": _mask_pii(request.url.path),
        "query_params": {
            key: "****" if key in _SECRET_QUERY_PARAMS else _mask_pii(value)
            for key, value in request.query_params.items()
        },
        "client_host": request.client.host if request.client else None,
    }


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuses an incoming X-Correlation-ID or generates one, and echoes it back"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = request.state.correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        fields = _request_fields(request)
        label = f"{fields['method']} {fields['path']}"
        started = time.monotonic()
        logger.info(f"Request started: {label}", extra_data=fields)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {label}",
                extra_data={
                    "path": fields["path"],
                    "duration_ms": round((time.monotonic() - started) * 1000),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        duration_ms = round((time.monotonic() - started) * 1000)
        completed = {"path": fields["path"], "status_code": response.status_code, "duration_ms": duration_ms}
        if response.status_code >= 400:
            logger.warning(f"Request completed: {label}", extra_data=completed)
        else:
            logger.info(f"Request completed: {label}", extra_data=completed)

        if _is_webhook_delivery(request) and duration_ms > settings.MAX_SYNC_PROCESSING_MS:
            # Meta מנסה שוב אם אין תשובה בזמן; הכפילות תיבלע ב-dedup
            logger.warning(
                "Webhook acknowledged after the inline budget",
                extra_data={"duration_ms": duration_ms, "budget_ms": settings.MAX_SYNC_PROCESSING_MS}
            )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """nosniff always; HSTS only outside DEBUG so local HTTP keeps working"""

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        if not self._debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": _mask_pii(request.url.path),
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": _mask_pii(request.url.path),
        },
        exc_info=True
    )
    headers = {"X-Correlation-ID": get_correlation_id()}

    if _is_webhook_delivery(request):
        # ספק שמקבל 5xx שולח שוב את כל ה-batch
        return JSONResponse(status_code=200, content={"status": "ok"}, headers=headers)

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {},
            }
        },
        headers=headers
    )


def setup_middleware(app: FastAPI) -> None:
    # האחרון שנוסף הוא החיצוני: SecurityHeaders → CorrelationId → RequestLogging → app
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
