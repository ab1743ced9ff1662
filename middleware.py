
# middleware.py
import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from services.metrics import increment_http_requests
from services.observability import set_request_id

logger = logging.getLogger("bilvo.http")


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = (request.headers.get("X-Request-ID") or "").strip() or str(uuid.uuid4())
        start = time.perf_counter()

        request.state.request_id = req_id
        set_request_id(req_id)

        response = None
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = req_id
            return response
        finally:
            duration_ms = int((time.perf_counter() - start) * 1000)
            status = getattr(response, "status_code", 500)
            route = request.scope.get("route")
            increment_http_requests(getattr(route, "path", request.url.path), status)

            # one line per request, no headers/body (PII)
            logger.info(
                "http_request_end request_id=%s method=%s path=%s status=%s duration_ms=%s",
                req_id,
                request.method,
                request.url.path,
                status,
                duration_ms,
            )
            set_request_id(None)
