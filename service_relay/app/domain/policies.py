"""
Request policies applied in front of the relay route.

Both policies are plain ASGI middleware so they can act before the body is
buffered (size cap) and around the whole request/response cycle (timeout).
"""

import asyncio
from typing import Optional

from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from shared.errors import PayloadTooLargeError, RelayError, RequestTimeoutError
from shared.logging import get_logger

logger = get_logger("relay.policies")


def _error_response(error: RelayError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_response().model_dump())


def _declared_length(scope: Scope) -> Optional[int]:
    for name, value in scope.get("headers", []):
        if name == b"content-length":
            try:
                return int(value)
            except ValueError:
                return None
    return None


class BodyLimitMiddleware:
    """Reject request bodies larger than ``max_body_size`` bytes.

    A declared ``Content-Length`` above the cap is refused before any of the
    body is read. Bodies without a usable length are counted as they stream in
    and the read fails with ``PayloadTooLargeError`` once the cap is crossed.
    """

    def __init__(self, app: ASGIApp, max_body_size: int):
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        declared = _declared_length(scope)
        if declared is not None and declared > self.max_body_size:
            logger.warning(
                "Request body over limit",
                declared_bytes=declared,
                limit=self.max_body_size
            )
            await _error_response(PayloadTooLargeError(self.max_body_size))(scope, receive, send)
            return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_size:
                    logger.warning(
                        "Streamed request body over limit",
                        received_bytes=received,
                        limit=self.max_body_size
                    )
                    raise PayloadTooLargeError(self.max_body_size)
            return message

        await self.app(scope, limited_receive, send)


class TimeoutMiddleware:
    """Abort requests that take longer than ``timeout`` seconds end to end.

    The inner call, including any pending upstream request, is cancelled. If
    the response has not started yet the caller gets a 408.
    """

    def __init__(self, app: ASGIApp, timeout: float):
        self.app = app
        self.timeout = timeout

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await asyncio.wait_for(self.app(scope, receive, tracking_send), self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Request timed out",
                path=scope.get("path"),
                timeout_seconds=self.timeout,
                response_started=response_started
            )
            if response_started:
                # headers are already on the wire; the server closes the connection
                raise
            await _error_response(RequestTimeoutError())(scope, receive, send)
