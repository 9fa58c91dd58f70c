# middleware.py
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from config.logging_config import get_logger

logger = get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Incoming X-Request-ID wins so ids can be traced across proxies
        request_id = request.headers.get('x-request-id') or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        response: Response = await call_next(request)

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers['X-Request-ID'] = request_id
        logger.info(
            "%s %s -> %s (%.1f ms) [request_id=%s]",
            request.method, request.url.path, response.status_code, elapsed_ms, request_id,
        )
        return response
