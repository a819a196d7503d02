"""
Token accounting with tiktoken
"""
from typing import Optional

import tiktoken

from stream_proxy.models import ChatRequest, Usage


class TokenCounter:
    """Estimates usage when the upstream does not report it"""

    def __init__(self, model: str = "gpt-3.5-turbo"):
        self.model = model
        self._encoding: Optional[tiktoken.Encoding] = None

    @property
    def encoding(self) -> tiktoken.Encoding:
        # Loaded on first use; tiktoken may fetch the BPE file
        if self._encoding is None:
            try:
                self._encoding = tiktoken.encoding_for_model(self.model)
            except KeyError:
                self._encoding = tiktoken.get_encoding("cl100k_base")
        return self._encoding

    def count_tokens(self, text: str) -> int:
        """Count tokens in a piece of text"""
        return len(self.encoding.encode(text))

    def estimate_request_tokens(self, request: ChatRequest) -> int:
        """Estimate prompt tokens for a chat request"""
        total_tokens = 0
        for message in request.messages:
            total_tokens += self.count_tokens(message.role)
            total_tokens += self.count_tokens(message.content)
            total_tokens += 4  # per-message framing overhead

        total_tokens += 2  # conversation start/end markers
        return total_tokens

    def estimate_usage(self, request: ChatRequest, completion_text: str) -> Usage:
        prompt_tokens = self.estimate_request_tokens(request)
        completion_tokens = self.count_tokens(completion_text)
        return Usage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )
