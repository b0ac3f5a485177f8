import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from fintrack.core.logging import APP_LOGGER, latency_bucket_ms, request_id_ctx_var, session_id_ctx_var

# Liveness probes would drown the request log
_QUIET_PATHS = ("/healthz",)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind request_id (and the caller's X-Session-Id) for the request, echo the id, log completion."""

    def __init__(self, app, header_name: str = "x-request-id", session_header: str = "x-session-id"):
        super().__init__(app)
        self.header_name = header_name
        self.session_header = session_header

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        rid_token = request_id_ctx_var.set(rid)
        sid_token = session_id_ctx_var.set(request.headers.get(self.session_header))

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(rid_token)
            session_id_ctx_var.reset(sid_token)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid
        if request.url.path not in _QUIET_PATHS:
            logging.getLogger(APP_LOGGER).info(
                "request.complete",
                extra={
                    "request_id": rid,
                    "session_id": request.headers.get(self.session_header),
                    "path": request.url.path,
                    "method": request.method,
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms(duration_ms),
                },
            )
        return response
