# WORKFLOW: Structured logging middleware for request/response monitoring.
# Used by: All API endpoints, operational monitoring, debugging
# Functions:
# 1. _log_request() - Log incoming request details (method, path, shipment summary)
# 2. _log_response() - Log response details (status, timing, content type)
# 3. _log_error() - Log error details with context
#
# Logging flow: Request -> Bind request id -> Log request -> Process -> Log response/error
# Every line for one request carries the same request_id through structlog contextvars.

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
import json
import time
import uuid
import structlog
from typing import Any, Callable, Dict, Optional

logger = structlog.get_logger()

# Request body keys worth recording for a calculation request
SUMMARY_FIELDS = ("hts_number", "country_of_origin", "declared_value", "entry_date", "trade_agreement_code")


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for structured request/response logging."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request and log details."""
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start_time = time.time()

        await self._log_request(request)

        try:
            response = await call_next(request)
        except Exception as e:
            await self._log_error(request, e, time.time() - start_time)
            raise

        await self._log_response(request, response, time.time() - start_time)
        response.headers["X-Request-ID"] = request_id
        return response

    async def _request_summary(self, request: Request) -> Optional[Dict[str, Any]]:
        if request.method not in ("POST", "PUT", "PATCH"):
            return None
        body = await request.body()
        if not body:
            return None
        try:
            payload = json.loads(body.decode())
        except (UnicodeDecodeError, ValueError):
            return {"raw": body[:200].decode(errors="replace")}
        if not isinstance(payload, dict):
            return None
        return {key: payload.get(key) for key in SUMMARY_FIELDS if key in payload}

    async def _log_request(self, request: Request):
        """Log incoming request details."""
        try:
            logger.info(
                "Incoming request",
                method=request.method,
                path=request.url.path,
                query_params=dict(request.query_params),
                body=await self._request_summary(request),
                client_ip=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent")
            )
        except Exception as e:
            logger.error(f"Failed to log request: {e}")

    async def _log_response(self, request: Request, response: Response, process_time: float):
        """Log response details."""
        logger.info(
            "Response sent",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time_ms=round(process_time * 1000, 2),
            content_length=response.headers.get("content-length"),
            content_type=response.headers.get("content-type")
        )

    async def _log_error(self, request: Request, error: Exception, process_time: float):
        """Log error details."""
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error_type=type(error).__name__,
            error_message=str(error),
            process_time_ms=round(process_time * 1000, 2)
        )
