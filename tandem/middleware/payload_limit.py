"""Request body size cap.

A declared ``Content-Length`` over ``max_sync_payload_bytes`` is refused
before the body is read.  Chunked bodies are counted as they arrive, and
the first chunk past the cap aborts the read with 413, so an oversized
body is never buffered or parsed in full.

Written as plain ASGI rather than ``BaseHTTPMiddleware`` because it has to
wrap ``receive``.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from tandem.config import Settings, get_settings

logger = logging.getLogger("tandem.payload")


class PayloadLimitMiddleware:
    def __init__(self, app: ASGIApp, settings: Settings | None = None) -> None:
        self.app = app
        self.max_bytes = (settings or get_settings()).max_sync_payload_bytes

    def _too_large(self) -> str:
        return f"Request body exceeds {self.max_bytes} bytes"

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        declared = Headers(scope=scope).get("content-length")
        if declared is not None:
            try:
                size = int(declared)
            except ValueError:
                response = JSONResponse({"detail": "Invalid Content-Length"}, status_code=400)
                await response(scope, receive, send)
                return
            if size > self.max_bytes:
                logger.warning("Refused %s: Content-Length %d", scope["path"], size)
                response = JSONResponse({"detail": self._too_large()}, status_code=413)
                await response(scope, receive, send)
                return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_bytes:
                    logger.warning("Aborted %s after %d body bytes", scope["path"], received)
                    raise HTTPException(status_code=413, detail=self._too_large())
            return message

        await self.app(scope, limited_receive, send)
