"""ASGI middleware: request context, request size limit."""

from __future__ import annotations

import secrets
import time

from starlette.datastructures import MutableHeaders
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from bron_backend.core.logging import get_logger, request_context

logger = get_logger(__name__)


class RequestContextMiddleware:
    """Inject request context for logging and echo X-Request-ID.

    Written as plain ASGI so event-stream responses pass through unbuffered.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers") or [])
        raw_id = headers.get(b"x-request-id")
        request_id = raw_id.decode("latin-1") if raw_id else secrets.token_hex(8)
        path = scope.get("path", "")
        method = scope.get("method", "")
        start_time = time.perf_counter()
        status_code = 500

        token = request_context.set({"request_id": request_id, "path": path, "method": method})

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                MutableHeaders(scope=message)["X-Request-ID"] = request_id
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                f"{method} {path} -> {status_code}",
                data={"duration_ms": round(duration_ms, 2)},
            )
            request_context.reset(token)


class RequestSizeLimitMiddleware:
    """Reject requests whose declared body exceeds max_bytes."""

    def __init__(self, app: ASGIApp, max_bytes: int = 1048576):
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            headers = dict(scope.get("headers") or [])
            content_length = headers.get(b"content-length")
            if content_length and content_length.isdigit() and int(content_length) > self.max_bytes:
                logger.warning(
                    f"Request too large: {content_length.decode()} bytes",
                    data={"max_bytes": self.max_bytes},
                )
                response = JSONResponse(
                    status_code=413,
                    content={
                        "detail": "Request body too large",
                        "error": {"code": "E4130", "message": "Request body too large"},
                    },
                )
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)
