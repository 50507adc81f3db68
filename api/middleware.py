# ============================================================================
# File: api/middleware.py
# ============================================================================

import time
import uuid
import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from core.exceptions import ETLException
from schemas.api import ErrorResponse

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Injects:
    - request_id
    - api_latency_ms

    Pipeline errors that reach the edge are returned as ErrorResponse bodies.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        start_time = time.perf_counter()

        # Attach request_id to request state
        request.state.request_id = request_id

        try:
            response: Response = await call_next(request)
        except ETLException as e:
            logger.error(f"[{request_id}] {request.method} {request.url.path} failed: {e}")
            error = ErrorResponse(error=type(e).__name__, detail=e.message)
            response = JSONResponse(status_code=500, content=error.model_dump(mode="json"))

        latency_ms = int((time.perf_counter() - start_time) * 1000)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)
        logger.debug(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({latency_ms} ms)")

        return response
