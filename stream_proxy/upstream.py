"""
Upstream LLM API client
Wraps the OpenAI SDK and normalizes its output for the relay
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Optional

import openai
from openai import AsyncOpenAI
from pydantic import ValidationError

from stream_proxy.config import Config
from stream_proxy.errors import UpstreamError, UpstreamUnavailable
from stream_proxy.models import (
    ChatRequest,
    ChatResponse,
    ModerationResponse,
    UpstreamChunk,
    Usage,
)

logger = logging.getLogger(__name__)


class Upstream(ABC):
    """What the proxy needs from an LLM provider"""

    @abstractmethod
    def stream_chat(self, request: ChatRequest) -> AsyncIterator[UpstreamChunk]:
        """
        Open a streaming completion
        Must be an async generator: lazy, finite, closed early via aclose()
        """

    @abstractmethod
    async def complete(self, request: ChatRequest) -> ChatResponse:
        """Run one non-streaming completion"""

    @abstractmethod
    async def moderate(self, text: str) -> ModerationResponse:
        """Classify text with the provider's moderation endpoint"""

    async def close(self) -> None:
        pass


def _usage_from(raw: Any) -> Optional[Usage]:
    if raw is None:
        return None
    return Usage(
        prompt_tokens=raw.prompt_tokens,
        completion_tokens=raw.completion_tokens,
        total_tokens=raw.total_tokens,
    )


def normalize_chunk(chunk: Any) -> UpstreamChunk:
    """Reduce an SDK stream chunk to its text delta and usage"""
    delta = None
    if chunk.choices:
        delta = chunk.choices[0].delta.content
    return UpstreamChunk(delta=delta, usage=_usage_from(getattr(chunk, "usage", None)))


def translate_error(exc: Exception) -> UpstreamError:
    """Map an SDK exception onto the proxy error taxonomy"""
    if isinstance(exc, UpstreamError):
        return exc
    if isinstance(exc, openai.APIConnectionError):
        # Includes APITimeoutError
        return UpstreamUnavailable(str(exc) or "Connection to the model provider failed")
    if isinstance(exc, openai.APIError):
        return UpstreamError(exc.message)
    if isinstance(exc, openai.OpenAIError):
        # Raised by the client itself, e.g. no API key configured
        return UpstreamUnavailable(str(exc))
    if isinstance(exc, (AttributeError, TypeError, ValidationError)):
        return UpstreamError(f"Malformed upstream payload: {exc}")
    return UpstreamError(str(exc))


class OpenAIUpstream(Upstream):
    """Upstream backed by the OpenAI chat completions API"""

    def __init__(self, config: Config):
        self.config = config
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.config.OPENAI_API_KEY,
                base_url=self.config.OPENAI_BASE_URL,
                timeout=self.config.UPSTREAM_TIMEOUT,
                max_retries=0,
            )
        return self._client

    def _build_params(self, request: ChatRequest, stream: bool) -> Dict[str, Any]:
        default_max_tokens = (
            self.config.DEFAULT_STREAM_MAX_TOKENS if stream else self.config.DEFAULT_MAX_TOKENS
        )
        params = {
            "model": request.model or self.config.DEFAULT_MODEL,
            "messages": [m.model_dump() for m in request.messages],
            "temperature": (
                request.temperature if request.temperature is not None
                else self.config.DEFAULT_TEMPERATURE
            ),
            "max_tokens": (
                request.max_tokens if request.max_tokens is not None
                else default_max_tokens
            ),
            "stream": stream,
        }
        if stream:
            params["stream_options"] = {"include_usage": True}
        return params

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[UpstreamChunk]:
        stream = None
        try:
            stream = await self.client.chat.completions.create(**self._build_params(request, stream=True))
            async for chunk in stream:
                yield normalize_chunk(chunk)
        except Exception as e:
            logger.error("Upstream stream failed: %s", e, exc_info=True)
            raise translate_error(e) from e
        finally:
            if stream is not None:
                await stream.close()

    async def complete(self, request: ChatRequest) -> ChatResponse:
        try:
            completion = await self.client.chat.completions.create(**self._build_params(request, stream=False))
            return ChatResponse(
                message=completion.choices[0].message.content or "",
                usage=_usage_from(completion.usage),
            )
        except Exception as e:
            logger.error("Upstream completion failed: %s", e, exc_info=True)
            raise translate_error(e) from e

    async def moderate(self, text: str) -> ModerationResponse:
        try:
            moderation = await self.client.moderations.create(input=text)
            result = moderation.results[0]
            return ModerationResponse(
                safe=not result.flagged,
                categories=result.categories.model_dump(by_alias=True),
                category_scores=result.category_scores.model_dump(by_alias=True),
            )
        except Exception as e:
            logger.error("Upstream moderation failed: %s", e, exc_info=True)
            raise translate_error(e) from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
