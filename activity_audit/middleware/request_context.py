"""
Request context middleware.

Assigns every request an id (reusing an incoming X-Request-ID when
the caller sent one), stores it on request.state for tracked
operations, and writes one structured access-log line per request.
"""

import json
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from activity_audit.schemas.activity import RequestContext

logger = logging.getLogger("activity_audit.access")

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request_id = request_id[:100]
        start_time = time.perf_counter()

        request.state.request_id = request_id

        response = await call_next(request)

        duration_ms = round((time.perf_counter() - start_time) * 1000, 1)
        logger.info(json.dumps({
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "client": request.client.host if request.client else None,
            "actor_id": request.headers.get("X-Actor-Id"),
        }))

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def request_context_from(request: Request) -> RequestContext:
    """Build the RequestContext a tracked operation records."""
    return RequestContext(
        source_address=request.client.host if request.client else None,
        client_agent=(request.headers.get("user-agent") or "")[:500] or None,
        request_id=getattr(request.state, "request_id", None),
        session_id=request.headers.get("X-Session-Id"),
        endpoint=request.url.path[:255],
        method=request.method,
    )
