"""Request/response logging middleware.

Logs every editor API call with a request id, timing and status code.
"""

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging HTTP requests and responses.

    Image payloads are never logged; only method, path, query, status,
    duration and (optionally) filtered headers.
    """

    def __init__(
        self,
        app,
        *,
        log_headers: bool = False,
        exclude_paths: Optional[list] = None,
    ):
        """Initialize logging middleware.

        Args:
            app: FastAPI application
            log_headers: Whether to log request headers
            exclude_paths: List of path prefixes to exclude from logging
        """
        super().__init__(app)
        self.log_headers = log_headers
        self.exclude_paths = exclude_paths or ["/health"]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        if self._should_exclude(request.url.path):
            return await call_next(request)

        start_time = time.time()
        self._log_request(request, request_id)

        try:
            response = await call_next(request)
        except Exception as e:
            self._log_error(request, e, request_id, time.time() - start_time)
            raise

        process_time = time.time() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(process_time)
        self._log_response(request, response.status_code, request_id, process_time)
        return response

    def _log_request(self, request: Request, request_id: str) -> None:
        log_data = {
            "event": "http_request",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params),
            "client_ip": self._get_client_ip(request),
        }
        if self.log_headers:
            log_data["headers"] = self._filter_headers(dict(request.headers))

        logger.info(json.dumps(log_data))

    def _log_response(
        self,
        request: Request,
        status_code: int,
        request_id: str,
        process_time: float,
    ) -> None:
        log_data = {
            "event": "http_response",
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "process_time_ms": round(process_time * 1000, 2),
        }

        if status_code >= 500:
            log_level = logging.ERROR
        elif status_code >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(log_level, json.dumps(log_data))

    def _log_error(
        self,
        request: Request,
        error: Exception,
        request_id: str,
        process_time: float,
    ) -> None:
        log_data = {
            "event": "http_error",
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "error_type": type(error).__name__,
            "error_message": str(error),
            "process_time_ms": round(process_time * 1000, 2),
        }
        logger.error(json.dumps(log_data), exc_info=True)

    def _filter_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        """Mask credentials before logging headers."""
        sensitive_headers = {"authorization", "x-api-key", "x-goog-api-key", "cookie"}
        return {
            key: "***REDACTED***" if key.lower() in sensitive_headers else value
            for key, value in headers.items()
        }

    def _get_client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            # X-Forwarded-For can contain multiple IPs, get the first one
            return forwarded_for.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"

    def _should_exclude(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.exclude_paths)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure root logging for the service.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logger.info(f"Logging configured at {log_level.upper()}")
