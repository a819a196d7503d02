"""
FastAPI server
Relays chat requests to the LLM API behind rate limiting and validation
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as redis
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Receive, Scope, Send

from stream_proxy.completion import CompletionHandler
from stream_proxy.config import Config
from stream_proxy.errors import (
    InvalidRequest,
    ProxyError,
    RateLimited,
    UpstreamError,
)
from stream_proxy.models import ErrorResponse, ModerationRequest
from stream_proxy.rate_limiter import (
    CounterStore,
    InMemoryCounterStore,
    RateLimiter,
    RedisCounterStore,
)
from stream_proxy.relay import RelayOutcome, RelayResult, RelaySession, RelayState, StreamRelay
from stream_proxy.sse import SSEResponse
from stream_proxy.tokens import TokenCounter
from stream_proxy.upstream import OpenAIUpstream, Upstream
from stream_proxy.validator import InjectionPolicy, RequestValidator

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware:
    """Logs method and path of every HTTP request"""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            logger.info("%s %s", scope["method"], scope["path"])
        await self.app(scope, receive, send)


class ProxyServer:
    """LLM stream proxy server"""

    def __init__(
        self,
        config: Optional[Config] = None,
        upstream: Optional[Upstream] = None,
        counter_store: Optional[CounterStore] = None,
        port: Optional[int] = None,
    ):
        self.config = config or Config()
        self.port = port or self.config.SERVER_PORT
        self.started_at = time.monotonic()

        self.upstream = upstream or OpenAIUpstream(self.config)
        self.validator = RequestValidator(
            InjectionPolicy.with_extra(self.config.INJECTION_EXTRA_PATTERNS)
        )
        self._owns_store = counter_store is None
        self.rate_limiter = RateLimiter(
            counter_store or InMemoryCounterStore(),
            window_seconds=self.config.RATE_LIMIT_WINDOW_SECONDS,
            max_requests=self.config.RATE_LIMIT_MAX_REQUESTS,
        )
        self.token_counter = TokenCounter()
        self.relay = StreamRelay(
            self.upstream, self.config,
            on_complete=self._record_usage,
            collect_text=self.config.ESTIMATE_USAGE,
        )
        self.completion_handler = CompletionHandler(self.upstream)

        self.app = FastAPI(title="LLM Stream Proxy", lifespan=self._lifespan)
        self.app.add_middleware(RequestLoggingMiddleware)

        self._setup_routes()
        self._setup_error_handlers()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        """Startup and shutdown"""
        if self._owns_store and self.config.RATE_LIMIT_BACKEND == "redis":
            redis_client = redis.from_url(
                self.config.redis_url,
                password=self.config.REDIS_PASSWORD,
                decode_responses=True,
            )
            try:
                await redis_client.ping()
            except redis.RedisError as e:
                logger.error("Cannot connect to Redis at %s: %s", self.config.redis_url, e)
                raise
            logger.info("Connected to Redis %s:%s", self.config.REDIS_HOST, self.config.REDIS_PORT)
            self.rate_limiter.store = RedisCounterStore(redis_client)

        logger.info("Stream proxy started on port %s (%s)", self.port, self.config.APP_ENV)
        logger.info("OpenAI API key: %s", "set" if self.config.OPENAI_API_KEY else "missing")
        try:
            yield
        finally:
            if self._owns_store:
                await self.rate_limiter.store.close()
            await self.upstream.close()
            logger.info("Stream proxy stopped")

    def _client_identity(self, request: Request) -> str:
        if self.config.TRUST_PROXY_HEADERS:
            forwarded = request.headers.get("x-forwarded-for")
            if forwarded:
                return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    async def _read_json(self, request: Request) -> Any:
        """Request body as JSON, or None when it does not parse"""
        try:
            return await request.json()
        except ValueError:
            return None

    def _record_usage(self, result: RelayResult) -> None:
        """Completion callback for streaming sessions"""
        usage = result.usage
        if usage is None and result.outcome is RelayOutcome.SUCCESS and self.config.ESTIMATE_USAGE:
            usage = self.token_counter.estimate_usage(result.request, result.text)
        if usage is None:
            logger.info(
                "Session %s (%s) %s, no usage reported",
                result.session_id, result.client_id, result.outcome.value,
            )
            return
        logger.info(
            "Session %s (%s) %s: prompt=%d completion=%d total=%d in %.2fs",
            result.session_id, result.client_id, result.outcome.value,
            usage.prompt_tokens, usage.completion_tokens, usage.total_tokens, result.duration,
        )

    def _setup_routes(self):
        """Register routes"""

        @self.app.get("/health")
        async def health_check():
            return {
                "status": "ok",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "uptime": time.monotonic() - self.started_at,
            }

        @self.app.post("/api/chat")
        async def chat(request: Request):
            """Non-streaming chat completion"""
            decision = await self.rate_limiter.enforce(self._client_identity(request))
            chat_request = self.validator.require(await self._read_json(request))

            response = await self.completion_handler.complete(chat_request)
            return JSONResponse(
                status_code=200,
                headers=decision.headers(),
                content=response.model_dump(exclude_none=True),
            )

        @self.app.post("/api/chat/stream")
        async def chat_stream(request: Request):
            """Streaming chat completion over SSE"""
            session = RelaySession(client_id=self._client_identity(request))
            session.transition(RelayState.VALIDATING)
            try:
                decision = await self.rate_limiter.enforce(session.client_id)
                session.request = self.validator.require(await self._read_json(request))
            except ProxyError:
                session.close(RelayOutcome.ERROR)
                raise

            async def produce(sink):
                await self.relay.run(session, sink)

            return SSEResponse(produce, headers=decision.headers())

        @self.app.post("/api/moderation")
        async def moderation(request: Request):
            """Forward text to the provider's moderation endpoint"""
            decision = await self.rate_limiter.enforce(self._client_identity(request))
            try:
                payload = ModerationRequest.model_validate(await self._read_json(request))
            except ValidationError:
                payload = None
            if payload is None or not payload.text:
                return JSONResponse(status_code=400, content={"error": "Invalid text"})

            try:
                result = await self.upstream.moderate(payload.text)
            except UpstreamError as e:
                raise type(e)(e.message, error="Moderation failed") from e
            return JSONResponse(status_code=200, headers=decision.headers(), content=result.model_dump())

    def _setup_error_handlers(self):
        """Map exceptions onto JSON error bodies"""

        @self.app.exception_handler(ProxyError)
        async def proxy_error_handler(request: Request, exc: ProxyError):
            body = ErrorResponse(error=exc.error)
            headers = None
            if isinstance(exc, RateLimited):
                headers = exc.decision.headers()
                logger.warning("Rate limited %s", self._client_identity(request))
            elif isinstance(exc, InvalidRequest):
                logger.warning("Rejected request from %s: %s", self._client_identity(request), exc.reason)
            elif isinstance(exc, UpstreamError) and self.config.is_development:
                body.message = exc.message
            return JSONResponse(
                status_code=exc.status_code,
                headers=headers,
                content=body.model_dump(exclude_none=True),
            )

        @self.app.exception_handler(StarletteHTTPException)
        async def http_error_handler(request: Request, exc: StarletteHTTPException):
            if exc.status_code == 404:
                content = {"error": "Not found", "path": request.url.path}
            else:
                content = {"error": str(exc.detail)}
            return JSONResponse(status_code=exc.status_code, headers=exc.headers, content=content)

        @self.app.exception_handler(Exception)
        async def unhandled_error_handler(request: Request, exc: Exception):
            logger.error("Unhandled error: %s", exc, exc_info=exc)
            message = str(exc) if self.config.is_development else "Something went wrong"
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "message": message},
            )

    def run(self):
        """Run the server"""
        uvicorn.run(
            self.app,
            host=self.config.SERVER_HOST,
            port=self.port,
            log_level=self.config.LOG_LEVEL.lower(),
        )


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="LLM stream proxy server")
    parser.add_argument("--port", type=int, default=None, help="Server port")
    args = parser.parse_args()

    config = Config()
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    server = ProxyServer(config=config, port=args.port)
    server.run()


if __name__ == "__main__":
    main()
