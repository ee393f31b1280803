"""
Request and scan context.

Generates or propagates X-Request-ID headers and keeps the request ID, the
calling actor (X-Actor) and the batch ID of the scan in progress in
ContextVars, so every log line written while serving a request or running a
scan can be tied back to it.
"""

import time
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")
_actor_var: ContextVar[str] = ContextVar("actor", default="")
_scan_batch_var: ContextVar[str] = ContextVar("scan_batch_id", default="")


def get_request_id() -> str:
    return _request_id_var.get()


def get_actor_name() -> str:
    return _actor_var.get()


def get_scan_batch_id() -> str:
    return _scan_batch_var.get()


@contextmanager
def scan_batch(batch_id: str):
    """Tag log records written inside the block with the scan's batch ID."""
    token = _scan_batch_var.set(batch_id)
    try:
        yield
    finally:
        _scan_batch_var.reset(token)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid4().hex
        request_token = _request_id_var.set(request_id)
        actor_token = _actor_var.set(request.headers.get("X-Actor", "").strip()[:100])

        start_time = time.time()
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.time() - start_time) * 1000, 2)
            _actor_var.reset(actor_token)
            _request_id_var.reset(request_token)

        response.headers["X-Request-ID"] = request_id

        # Prometheus scrapes are not logged
        if request.url.path != "/metrics":
            logger.info(
                "%s %s %s %.0fms",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={"duration_ms": duration_ms},
            )

        return response
