"""
Error taxonomy for the proxy pipeline
"""
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from stream_proxy.rate_limiter import RateLimitDecision

INVALID_REQUEST_MESSAGE = "Invalid request format or potentially malicious content"
RATE_LIMITED_MESSAGE = "Too many requests from this IP, please try again later"


class ProxyError(Exception):
    """Base class for errors that map onto a client-visible response"""

    status_code = 500
    error = "Internal server error"

    def __init__(self, message: Optional[str] = None, error: Optional[str] = None):
        super().__init__(message or self.error)
        self.message = message
        if error is not None:
            self.error = error


class InvalidRequest(ProxyError):
    """Structural or policy violation in the inbound body"""

    status_code = 400
    error = INVALID_REQUEST_MESSAGE

    def __init__(self, reason: str):
        # The reason is kept for logs only and never sent to the client.
        super().__init__(reason)
        self.reason = reason
        self.message = None


class RateLimited(ProxyError):
    """Client identity exceeded its window quota"""

    status_code = 429
    error = RATE_LIMITED_MESSAGE

    def __init__(self, decision: "RateLimitDecision"):
        super().__init__()
        self.decision = decision


class UpstreamError(ProxyError):
    """The LLM API returned an error or an unusable payload"""

    status_code = 502
    error = "Failed to generate response"


class UpstreamUnavailable(UpstreamError):
    """The LLM API could not be reached"""

    status_code = 503
    error = "Upstream service unavailable"
