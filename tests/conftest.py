"""Shared fixtures: an in-process upstream and a recording sink."""

import json
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from stream_proxy.config import Config
from stream_proxy.errors import UpstreamError
from stream_proxy.models import ChatRequest, ChatResponse, ModerationResponse, UpstreamChunk, Usage
from stream_proxy.server import ProxyServer
from stream_proxy.sse import DownstreamSink

USAGE = Usage(prompt_tokens=9, completion_tokens=3, total_tokens=12)


class FakeUpstream:
    """Upstream that replays scripted chunks and records every call."""

    def __init__(
        self,
        deltas: Optional[List[Optional[str]]] = None,
        fail_after: Optional[int] = None,
        fail_on_open: bool = False,
        usage: Optional[Usage] = USAGE,
    ):
        self.deltas = ["Hello", "", " there", None, "!"] if deltas is None else deltas
        self.fail_after = fail_after
        self.fail_on_open = fail_on_open
        self.usage = usage
        self.stream_calls: List[ChatRequest] = []
        self.complete_calls: List[ChatRequest] = []
        self.moderate_calls: List[str] = []
        self.chunks_yielded = 0
        self.closed = False
        self.complete_error: Optional[Exception] = None

    async def stream_chat(self, request):
        self.stream_calls.append(request)
        try:
            if self.fail_on_open:
                raise UpstreamError("connection refused by provider")
            for index, delta in enumerate(self.deltas):
                if self.fail_after is not None and index == self.fail_after:
                    raise UpstreamError("provider dropped the stream")
                self.chunks_yielded += 1
                yield UpstreamChunk(delta=delta)
            if self.fail_after is not None and self.fail_after >= len(self.deltas):
                raise UpstreamError("provider dropped the stream")
            if self.usage is not None:
                self.chunks_yielded += 1
                yield UpstreamChunk(delta=None, usage=self.usage)
        finally:
            self.closed = True

    async def complete(self, request):
        self.complete_calls.append(request)
        if self.complete_error is not None:
            raise self.complete_error
        text = "".join(d for d in self.deltas if d)
        return ChatResponse(message=text, usage=self.usage)

    async def moderate(self, text):
        self.moderate_calls.append(text)
        flagged = "kill" in text
        return ModerationResponse(
            safe=not flagged,
            categories={"violence": flagged},
            category_scores={"violence": 0.98 if flagged else 0.01},
        )

    async def close(self):
        pass

    @property
    def called(self) -> bool:
        return bool(self.stream_calls or self.complete_calls or self.moderate_calls)


class RecordingSink(DownstreamSink):
    """Collects frames; optionally disconnects after a number of writes."""

    def __init__(self, disconnect_after: Optional[int] = None):
        self.frames: List[str] = []
        self.disconnect_after = disconnect_after
        self.close_calls = 0
        self._open = True

    def is_open(self) -> bool:
        return self._open

    async def send(self, frame: str) -> None:
        assert self._open, "wrote to a closed sink"
        self.frames.append(frame)
        if self.disconnect_after is not None and len(self.frames) >= self.disconnect_after:
            self._open = False

    async def close(self) -> None:
        self.close_calls += 1
        self._open = False


class RaisingSink(RecordingSink):
    """Sink whose transport breaks on a given write without reporting a disconnect."""

    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on
        self.attempts = 0

    async def send(self, frame: str) -> None:
        self.attempts += 1
        if self.attempts == self.fail_on:
            raise RuntimeError("transport closed")
        await super().send(frame)


def parse_frames(raw: str) -> List[object]:
    """Decode an SSE body into payloads; the sentinel stays a string."""
    payloads = []
    for block in raw.split("\n\n"):
        if not block.strip():
            continue
        assert block.startswith("data: "), block
        data = block[len("data: "):]
        payloads.append(data if data == "[DONE]" else json.loads(data))
    return payloads


def make_request(content: str = "Say hello") -> ChatRequest:
    return ChatRequest.model_validate({"messages": [{"role": "user", "content": content}]})


@pytest.fixture
def config():
    cfg = Config()
    cfg.APP_ENV = "production"
    cfg.RATE_LIMIT_BACKEND = "memory"
    cfg.RATE_LIMIT_MAX_REQUESTS = 100
    cfg.RATE_LIMIT_WINDOW_SECONDS = 15 * 60
    cfg.TRUST_PROXY_HEADERS = False
    cfg.INJECTION_EXTRA_PATTERNS = []
    cfg.ESTIMATE_USAGE = False
    return cfg


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def server(config, upstream):
    return ProxyServer(config=config, upstream=upstream)


@pytest.fixture
def client(server):
    return TestClient(server.app, raise_server_exceptions=False)
