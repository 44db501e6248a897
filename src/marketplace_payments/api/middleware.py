"""
Request logging middleware.

Every request gets a request id (taken from `X-Request-Id` when the caller
sends one) that is stored on `request.state`, echoed back in the response
header and included in the access log line.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: Any,
        *,
        request_id_header: str = "X-Request-Id",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.request_id_header = request_id_header
        self.skip_paths = tuple(skip_paths or ())

    def _should_log(self, path: str) -> bool:
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        request_id = request.headers.get(self.request_id_header) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "%s %s failed after %.1fms [%s]",
                request.method,
                request.url.path,
                (time.perf_counter() - started) * 1000,
                request_id,
            )
            raise

        response.headers[self.request_id_header] = request_id
        if self._should_log(request.url.path):
            logger.info(
                "%s %s -> %d in %.1fms [%s]",
                request.method,
                request.url.path,
                response.status_code,
                (time.perf_counter() - started) * 1000,
                request_id,
                extra={"user_id": request.headers.get("X-User-Id")},
            )
        return response
