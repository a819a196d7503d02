"""
Non-streaming chat completion
"""
import logging

from stream_proxy.models import ChatRequest, ChatResponse
from stream_proxy.upstream import Upstream

logger = logging.getLogger(__name__)


class CompletionHandler:
    """Calls upstream once and returns the whole reply"""

    def __init__(self, upstream: Upstream):
        self.upstream = upstream

    async def complete(self, request: ChatRequest) -> ChatResponse:
        """
        Run a single completion
        Upstream failures propagate as UpstreamError before any byte is sent
        """
        response = await self.upstream.complete(request)
        if response.usage is not None:
            logger.info(
                "Completion done: %d prompt + %d completion tokens",
                response.usage.prompt_tokens, response.usage.completion_tokens,
            )
        return response
