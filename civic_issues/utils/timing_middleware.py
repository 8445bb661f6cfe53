import logging
import os
import time

from pymongo import monitoring
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("performance")

QUIET_PATHS = ("/", "/health", "/favicon.ico")


class CommandLogger(monitoring.CommandListener):
    """Reports slow MongoDB commands (geo candidate scans show up here first)."""

    def __init__(self, slow_ms: float = 100.0):
        self.slow_ms = slow_ms
        self._started = {}

    def started(self, event):
        self._started[event.request_id] = time.time()

    def succeeded(self, event):
        start_time = self._started.pop(event.request_id, None)
        if start_time is None:
            return
        duration = (time.time() - start_time) * 1000
        if duration > self.slow_ms:
            logger.warning(f"🐌 Slow MongoDB {event.command_name}: {duration:.2f} ms")

    def failed(self, event):
        start_time = self._started.pop(event.request_id, None)
        # Index creation racing an existing index is expected at startup
        if event.command_name == "createIndexes" and getattr(event.failure, "code", 0) == 85:
            return
        duration = (time.time() - start_time) * 1000 if start_time else 0
        logger.error(f"❌ MongoDB {event.command_name} failed after {duration:.2f} ms")


def register_command_logger(slow_ms: float = 100.0) -> CommandLogger:
    listener = CommandLogger(slow_ms)
    monitoring.register(listener)
    return listener


class TimingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        response: Response = await call_next(request)
        process_time = (time.time() - start_time) * 1000

        path = request.url.path
        if path not in QUIET_PATHS:
            slow_ms = int(os.getenv("SLOW_REQUEST_MS", "2500"))
            if process_time > slow_ms:
                logger.warning(f"🐌 Slow request {request.method} {path} took {process_time:.2f} ms "
                               f"(threshold {slow_ms} ms)")
            else:
                logger.info(f"⏱️ Request {request.method} {path} took {process_time:.2f} ms")

        response.headers["X-Process-Time-ms"] = f"{process_time:.2f}"
        return response
