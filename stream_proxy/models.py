"""
Data models for the chat proxy API
"""
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, StrictStr

MAX_MESSAGES = 50
MAX_CONTENT_LENGTH = 10000

Role = Literal["system", "user", "assistant"]


class ChatMessage(BaseModel):
    """A single conversation turn"""
    model_config = ConfigDict(frozen=True)

    role: Role
    content: StrictStr = Field(min_length=1, max_length=MAX_CONTENT_LENGTH)


class ChatRequest(BaseModel):
    """Inbound chat request, streaming or not"""
    model_config = ConfigDict(frozen=True)

    messages: List[ChatMessage] = Field(min_length=1, max_length=MAX_MESSAGES)
    model: Optional[StrictStr] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class Usage(BaseModel):
    """Token usage reported by (or estimated for) the upstream"""
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class ChatResponse(BaseModel):
    """Non-streaming completion response"""
    message: str
    usage: Optional[Usage] = None


class ErrorResponse(BaseModel):
    """Error response body"""
    error: str
    message: Optional[str] = None


class ModerationRequest(BaseModel):
    text: str


class ModerationResponse(BaseModel):
    safe: bool
    categories: Dict[str, Any]
    category_scores: Dict[str, Any]


class UpstreamChunk(BaseModel):
    """One normalized chunk from the upstream stream"""
    delta: Optional[str] = None
    usage: Optional[Usage] = None
