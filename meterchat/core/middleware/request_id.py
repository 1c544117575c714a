import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from meterchat.core.logging import LOGGER_NAME, latency_bucket_ms, request_id_ctx_var

# Longer client-supplied ids are replaced
MAX_REQUEST_ID_LENGTH = 128


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Correlate every request with an id and log one completion line per request."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name
        self.logger = logging.getLogger(LOGGER_NAME)

    def _resolve_id(self, request) -> str:
        supplied = request.headers.get(self.header_name, "").strip()
        if supplied and len(supplied) <= MAX_REQUEST_ID_LENGTH:
            return supplied
        return str(uuid4())

    async def dispatch(self, request, call_next):
        rid = self._resolve_id(request)
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)

        response.headers[self.header_name] = rid
        self.logger.info(
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
            },
        )
        return response
