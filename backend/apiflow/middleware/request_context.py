"""
Log correlation context.

Two ContextVars tag every log line emitted while they are set:

  request_id  one API request; taken from X-Request-ID or generated, and
              echoed back on the response
  run_id      one pipeline run; set by the orchestrator for the whole run,
              whether it executes in a request, a background task or the
              queue worker
"""

import logging
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")
_run_id_var: ContextVar[int | None] = ContextVar("run_id", default=None)


def get_request_id() -> str:
    return _request_id_var.get()


def get_run_id() -> int | None:
    return _run_id_var.get()


@contextmanager
def run_scope(run_id: int) -> Iterator[None]:
    """Tag log records with `run_id` until the block exits."""
    token = _run_id_var.set(run_id)
    try:
        yield
    finally:
        _run_id_var.reset(token)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds the request id and writes one access-log line per request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        token = _request_id_var.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.info(
                "%s %s %s %.0fms", request.method, request.url.path, response.status_code, duration_ms,
                extra={"duration_ms": duration_ms},
            )
        finally:
            _request_id_var.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
