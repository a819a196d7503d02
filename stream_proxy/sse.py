"""
Server-Sent Events framing and the ASGI downstream sink
"""
import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

from starlette.responses import Response
from starlette.types import Receive, Scope, Send

logger = logging.getLogger(__name__)

DONE_FRAME = "data: [DONE]\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_frame(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def content_frame(content: str) -> str:
    return format_frame({"content": content})


def error_frame(error: str, message: str) -> str:
    return format_frame({"error": error, "message": message})


class DownstreamSink(ABC):
    """Where relay frames go. is_open() is checked before every write."""

    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    async def send(self, frame: str) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        """End the response. Safe to call more than once."""


class ASGISink(DownstreamSink):
    """Writes frames straight to an ASGI send channel.

    A background task drains ``receive`` and flips ``is_open()`` to False as
    soon as the server reports ``http.disconnect``.
    """

    def __init__(self, send: Send, receive: Receive):
        self._send = send
        self._receive = receive
        self._open = True
        self._closed = False
        self._listener: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._listener = asyncio.create_task(self._listen_for_disconnect())

    async def _listen_for_disconnect(self) -> None:
        while True:
            message = await self._receive()
            if message["type"] == "http.disconnect":
                logger.debug("Downstream disconnected")
                self._open = False
                return

    def is_open(self) -> bool:
        return self._open and not self._closed

    async def send(self, frame: str) -> None:
        try:
            await self._send({
                "type": "http.response.body",
                "body": frame.encode("utf-8"),
                "more_body": True,
            })
        except OSError:
            # ASGI 2.4 servers raise on send after the peer went away
            self._open = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._send({"type": "http.response.body", "body": b"", "more_body": False})
        except OSError:
            self._open = False
        finally:
            if self._listener is not None:
                self._listener.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._listener


class SSEResponse(Response):
    """text/event-stream response whose body is produced by writing to a sink"""

    media_type = "text/event-stream"

    def __init__(
        self,
        producer: Callable[[DownstreamSink], Awaitable[Any]],
        status_code: int = 200,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.producer = producer
        self.status_code = status_code
        self.background = None
        self.init_headers({**SSE_HEADERS, **(headers or {})})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await send({
            "type": "http.response.start",
            "status": self.status_code,
            "headers": self.raw_headers,
        })
        sink = ASGISink(send, receive)
        sink.start()
        try:
            await self.producer(sink)
        finally:
            await sink.close()
